"""Tests for working directory cleanup."""

import asyncio
import os
import signal

import pytest

from docker_squash.core import cleanup
from docker_squash.core.cleanup import CleanupWatcher
from docker_squash.exceptions import CleanupError, SquashCancelledError


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    (path / "export" / "layer").mkdir(parents=True)
    (path / "export" / "layer" / "file").write_text("data")
    return path


@pytest.mark.asyncio
async def test_removes_on_exit(workdir):
    """Test removal when the scope completes."""
    async with CleanupWatcher(workdir) as watcher:
        async with watcher.stage():
            assert workdir.exists()

    assert watcher.removed
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_keep(workdir):
    """Test that keep leaves the directory in place."""
    async with CleanupWatcher(workdir, keep=True) as watcher:
        pass

    assert watcher.removed
    assert workdir.exists()


@pytest.mark.asyncio
async def test_removes_on_error(workdir):
    """Errors propagate after the directory is gone."""
    with pytest.raises(ValueError, match="boom"):
        async with CleanupWatcher(workdir):
            raise ValueError("boom")

    assert not workdir.exists()


@pytest.mark.asyncio
async def test_removes_read_only_trees(workdir):
    """Trees with read-only directories are still removed."""
    os.chmod(workdir / "export" / "layer", 0o555)

    async with CleanupWatcher(workdir):
        pass

    assert not workdir.exists()


@pytest.mark.asyncio
async def test_cancel_stops_next_stage(workdir):
    """After cancel() no further stage starts."""
    ran = []

    with pytest.raises(SquashCancelledError, match="Interrupted"):
        async with CleanupWatcher(workdir) as watcher:
            watcher.cancel()
            async with watcher.stage():
                ran.append(1)

    assert ran == []
    assert watcher.cancelled
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_removal_waits_for_running_stage(workdir):
    """A stage in progress finishes before the directory is removed."""
    with pytest.raises(SquashCancelledError):
        async with CleanupWatcher(workdir) as watcher:
            async with watcher.stage():
                watcher.cancel()
                await asyncio.sleep(0.05)
                assert (workdir / "export" / "layer" / "file").read_text() == "data"

    assert not workdir.exists()


@pytest.mark.asyncio
async def test_signal_triggers_cleanup(workdir):
    """A watched signal cancels the run and removes the directory."""
    async with CleanupWatcher(workdir, signals=(signal.SIGUSR1,)) as watcher:
        os.kill(os.getpid(), signal.SIGUSR1)
        for _ in range(100):
            if watcher.removed:
                break
            await asyncio.sleep(0.01)

        assert watcher.cancelled
        assert not workdir.exists()
        with pytest.raises(SquashCancelledError):
            watcher.raise_if_cancelled()


@pytest.mark.asyncio
async def test_removes_once(workdir, monkeypatch):
    """Cancellation and scope exit remove the directory only once."""
    calls = []
    real_rmtree = cleanup.force_rmtree

    def counting_rmtree(path):
        calls.append(path)
        real_rmtree(path)

    monkeypatch.setattr(cleanup, "force_rmtree", counting_rmtree)

    async with CleanupWatcher(workdir) as watcher:
        watcher.cancel()
        watcher.cancel()
        await asyncio.sleep(0.01)

    assert calls == [workdir]


@pytest.mark.asyncio
async def test_removal_failure(workdir, monkeypatch):
    """A failed removal is reported when nothing else went wrong."""

    def failing_rmtree(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(cleanup, "force_rmtree", failing_rmtree)

    with pytest.raises(CleanupError, match="Failed to remove"):
        async with CleanupWatcher(workdir):
            pass


@pytest.mark.asyncio
async def test_removal_failure_does_not_mask_error(workdir, monkeypatch):
    """The error raised in the scope wins over a failed removal."""

    def failing_rmtree(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(cleanup, "force_rmtree", failing_rmtree)

    with pytest.raises(ValueError, match="boom"):
        async with CleanupWatcher(workdir):
            raise ValueError("boom")
