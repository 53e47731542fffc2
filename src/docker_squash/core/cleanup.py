"""Working directory cleanup on completion, failure or termination signals."""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Sequence

from ..exceptions import CleanupError, SquashCancelledError
from ..utils.fs import force_rmtree

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CleanupWatcher:
    """Removes the working directory exactly once, and is awaited before exit.

    Removal is triggered by a termination signal or by leaving the
    ``async with`` block, whichever comes first. Pipeline stages run inside
    ``stage()`` so removal never overlaps a stage that is touching the
    directory; once cancellation is requested the next stage refuses to
    start.

    Usage:
        async with CleanupWatcher(workdir) as watcher:
            async with watcher.stage():
                ...
    """

    def __init__(
        self,
        workdir: Path | str,
        keep: bool = False,
        signals: Sequence[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        self.workdir = Path(workdir)
        self.keep = keep
        self.signals = tuple(signals)
        self._cancelled = False
        self._removed = False
        self._trigger = asyncio.Event()
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._installed: list[signal.Signals] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def removed(self) -> bool:
        return self._removed

    def cancel(self) -> None:
        """Request cancellation: stop the pipeline and remove the working directory."""
        if not self._cancelled:
            self._cancelled = True
            self._trigger.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise SquashCancelledError("Interrupted by a termination signal")

    def _on_signal(self, signum: signal.Signals) -> None:
        logger.warning("Received %s, cleaning up", signal.Signals(signum).name)
        self.cancel()

    @asynccontextmanager
    async def stage(self) -> AsyncIterator[None]:
        """Run a pipeline stage that works inside the working directory."""
        async with self._lock:
            self.raise_if_cancelled()
            yield
        self.raise_if_cancelled()

    async def _watch(self) -> None:
        await self._trigger.wait()
        async with self._lock:
            await self._remove()

    async def _remove(self) -> None:
        if self._removed:
            return
        self._removed = True

        if self.keep:
            logger.info("Keeping working directory %s", self.workdir)
            return
        if not self.workdir.exists():
            return

        logger.debug("Removing working directory %s", self.workdir)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, force_rmtree, self.workdir)
        except OSError as e:
            raise CleanupError(f"Failed to remove {self.workdir}: {e}") from e

    async def __aenter__(self) -> "CleanupWatcher":
        """Install signal handlers and start watching."""
        loop = asyncio.get_event_loop()
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Not the main thread, or a platform without loop signal support
                logger.debug("Cannot watch %s: %s", signal.Signals(sig).name, e)
                continue
            self._installed.append(sig)

        self._task = loop.create_task(self._watch())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Trigger removal and wait for it to finish."""
        loop = asyncio.get_event_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()

        self._trigger.set()
        try:
            await self._task
        except CleanupError:
            if exc_type is None:
                raise
            logger.error("Working directory %s was not removed", self.workdir)
