"""Merging a range of layers into one squashed layer."""

import asyncio
import copy
import logging
import os
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import aiofiles.os

from .exceptions import MergeConflictError, MetadataError, SquashError
from .graph import SQUASH_MARKER, ExportGraph
from .tar.codec import pack_layer, read_xattrs, write_xattrs
from .tar.models import LayerConfig, LayerEntry
from .tar.writer import write_layer_json, write_version_file
from .utils.fs import is_real_dir, remove_path
from .utils.identifiers import new_id, truncate_id

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
# aufs bookkeeping entries (.wh..wh.plnk, .wh..wh.aufs) carry no filesystem content
AUFS_META_PREFIX = ".wh..wh."

SQUASH_COMMENT = "squashed w/ docker-squash"


def _can_chown() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _copy_metadata(dst: Path, st: os.stat_result, xattrs: dict[str, bytes]) -> None:
    """Give ``dst`` the ownership, mode, xattrs and times captured in ``st``."""
    is_link = stat.S_ISLNK(st.st_mode)
    if _can_chown():
        # chown before chmod: chown clears setuid/setgid bits
        os.chown(dst, st.st_uid, st.st_gid, follow_symlinks=False)
    if not is_link:
        os.chmod(dst, stat.S_IMODE(st.st_mode))
    write_xattrs(dst, xattrs)
    if not is_link or os.utime in os.supports_follow_symlinks:
        os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns), follow_symlinks=False)


class TreeMerger:
    """Overlays layer diff trees onto a target tree, oldest layer first.

    ``lower`` lists the extracted trees of the layers kept below the
    target (nearest first). Deletions of paths those layers still expose
    are recorded as fresh whiteout markers in the target; markers coming
    from merged layers are never copied.
    """

    def __init__(self, target: Path, lower: list[Path] | None = None) -> None:
        self.target = Path(target)
        self.lower = [Path(p) for p in (lower or [])]
        # Directory metadata is applied once every layer is in, so that
        # read-only directories stay writable while merging
        self._dir_meta: dict[str, tuple[os.stat_result, dict[str, bytes]]] = {}

    def visible_below(self, rel: str) -> bool:
        """Whether ``rel`` exists in the stack of lower layers."""
        if rel in (".", ""):
            return False
        parts = rel.split("/")

        for layer in self.lower:
            for i, name in enumerate(parts):
                if os.path.lexists(layer.joinpath(*parts[:i], WHITEOUT_PREFIX + name)):
                    return False
            if os.path.lexists(layer.joinpath(*parts)):
                return True
            for i in range(1, len(parts)):
                prefix = layer.joinpath(*parts[:i])
                if os.path.lexists(prefix / OPAQUE_MARKER):
                    return False
                if os.path.lexists(prefix) and not is_real_dir(prefix):
                    return False
        return False

    def _marker_path(self, rel: str) -> Path:
        parent, name = os.path.split(rel)
        return self.target / parent / (WHITEOUT_PREFIX + name)

    def _write_marker(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        os.close(fd)

    def whiteout(self, rel: str) -> None:
        """Delete ``rel`` from the target.

        Raises:
            MergeConflictError: If ``rel`` does not name a path below the target
        """
        rel = os.path.normpath(rel)
        if rel in (".", "..") or rel.startswith("../") or os.path.isabs(rel):
            raise MergeConflictError(f"Whiteout for /{rel} points outside the layer")
        dst = self.target / rel
        if os.path.lexists(dst):
            remove_path(dst)
        if self.visible_below(rel):
            self._write_marker(self._marker_path(rel))

    def reset_dir(self, rel: str) -> None:
        """Empty directory ``rel`` of everything earlier layers put there."""
        dst = self.target / rel
        if is_real_dir(dst):
            for name in os.listdir(dst):
                remove_path(dst / name)
        if self.visible_below(rel):
            self._write_marker(dst / OPAQUE_MARKER)

    def _clear_for_file(self, rel: str) -> None:
        dst = self.target / rel
        if is_real_dir(dst):
            if os.listdir(dst):
                raise MergeConflictError(
                    f"Cannot replace non-empty directory /{rel} with a file"
                )
            os.rmdir(dst)
            self._dir_meta.pop(rel, None)
        elif os.path.lexists(dst):
            os.unlink(dst)

        marker = self._marker_path(rel)
        if os.path.lexists(marker):
            os.unlink(marker)

    def add_file(self, src: Path, rel: str, hardlinks: dict[tuple[int, int], Path]) -> None:
        """Create or replace a non-directory entry."""
        st = os.lstat(src)
        dst = self.target / rel
        self._clear_for_file(rel)

        key = (st.st_dev, st.st_ino)
        if stat.S_ISREG(st.st_mode) and st.st_nlink > 1 and key in hardlinks:
            os.link(hardlinks[key], dst)
            return

        if stat.S_ISLNK(st.st_mode):
            os.symlink(os.readlink(src), dst)
        elif stat.S_ISREG(st.st_mode):
            shutil.copyfile(src, dst, follow_symlinks=False)
            if st.st_nlink > 1:
                hardlinks[key] = dst
        elif stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode) or stat.S_ISFIFO(st.st_mode):
            os.mknod(dst, st.st_mode, st.st_rdev)
        else:
            logger.debug("Skipping unsupported file type /%s", rel)
            return

        _copy_metadata(dst, st, read_xattrs(src))

    def add_dir(self, src: Path, rel: str) -> None:
        """Create directory ``rel`` (or keep the existing one) and record its metadata."""
        dst = self.target / rel
        recreated = False

        if os.path.lexists(dst) and not is_real_dir(dst):
            os.unlink(dst)
        marker = self._marker_path(rel)
        if os.path.lexists(marker):
            os.unlink(marker)
            recreated = True

        if not os.path.lexists(dst):
            os.mkdir(dst, 0o700)
            if recreated:
                # Deleted then recreated: hide what the lower layers had here
                self._write_marker(dst / OPAQUE_MARKER)

        os.chmod(dst, 0o700)
        self._dir_meta[rel] = (os.lstat(src), read_xattrs(src))

    def apply(self, layer: Path) -> None:
        """Overlay one layer's diff tree onto the target."""
        layer = Path(layer)
        hardlinks: dict[tuple[int, int], Path] = {}

        def _raise(e: OSError) -> None:
            raise e

        for dirpath, dirnames, filenames in os.walk(layer, onerror=_raise):
            dirnames.sort()
            filenames.sort()
            rel_dir = os.path.relpath(dirpath, layer)
            names = dirnames + filenames

            if OPAQUE_MARKER in names:
                self.reset_dir(rel_dir)

            for name in names:
                if not name.startswith(WHITEOUT_PREFIX) or name.startswith(AUFS_META_PREFIX):
                    continue
                deleted = name[len(WHITEOUT_PREFIX):]
                if not deleted:
                    continue
                if deleted in (".", "..") or "/" in deleted:
                    raise MergeConflictError(
                        f"Invalid whiteout {name!r} in /{rel_dir} of {layer}"
                    )
                self.whiteout(os.path.join(rel_dir, deleted))

            descend = []
            for name in names:
                if name.startswith(WHITEOUT_PREFIX):
                    continue
                src = Path(dirpath) / name
                rel = os.path.normpath(os.path.join(rel_dir, name))
                if is_real_dir(src):
                    self.add_dir(src, rel)
                    descend.append(name)
                else:
                    self.add_file(src, rel, hardlinks)
            dirnames[:] = [d for d in dirnames if d in descend]

    def finish(self) -> None:
        """Apply the recorded directory metadata, deepest directories first."""
        for rel in sorted(self._dir_meta, key=lambda r: r.count("/"), reverse=True):
            dst = self.target / rel
            if not is_real_dir(dst):
                continue
            st, xattrs = self._dir_meta[rel]
            _copy_metadata(dst, st, xattrs)
        self._dir_meta.clear()


def merge_trees(target: Path, layers: list[Path], lower: list[Path] | None = None) -> None:
    """Overlay ``layers`` (parents first) onto ``target``.

    Args:
        target: Tree receiving the merged result
        layers: Extracted diff trees to merge, oldest first
        lower: Extracted trees of the layers kept under target, nearest first

    Raises:
        MergeConflictError: If a file would replace a non-empty directory
    """
    merger = TreeMerger(target, lower)
    for layer in layers:
        merger.apply(layer)
    merger.finish()


def _now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SquashEngine:
    """Inserts the squashed layer into an ExportGraph and fills it."""

    def __init__(self, graph: ExportGraph, id_factory: Callable[[], str] = new_id) -> None:
        self.graph = graph
        self.id_factory = id_factory

    def _fresh_id(self) -> str:
        while True:
            layer_id = self.id_factory()
            if layer_id not in self.graph.entries:
                return layer_id

    async def insert_layer(self, after_id: str) -> LayerEntry:
        """Create an empty layer right after ``after_id``.

        The new layer takes over all of ``after_id``'s children and gets an
        empty extracted tree, ready to be squashed into.

        Args:
            after_id: Id of the layer to insert after

        Returns:
            The new LayerEntry

        Raises:
            LayerNotFoundError: If ``after_id`` is unknown
            MetadataError: If the layer directory cannot be created
        """
        after = self.graph.get(after_id)
        layer_id = self._fresh_id()

        config = LayerConfig(
            id=layer_id,
            parent=after.id,
            created=_now_rfc3339(),
            container_config={
                "Cmd": ["/bin/sh", "-c", f"{SQUASH_MARKER} from {truncate_id(after.id)}"]
            },
            config=copy.deepcopy(after.config.config),
            comment=SQUASH_COMMENT,
            extra={
                k: v
                for k, v in after.config.extra.items()
                if k in ("architecture", "os", "docker_version")
            },
        )
        entry = LayerEntry(config=config, path=self.graph.path / layer_id)

        try:
            await aiofiles.os.makedirs(entry.tree_path, exist_ok=True)
        except OSError as e:
            raise MetadataError(f"Cannot create layer directory {entry.path}: {e}") from e
        entry.layer_dir = entry.tree_path
        await write_version_file(entry.version_path)

        children = list(self.graph.children.get(after.id, []))
        self.graph.add(entry)
        for child_id in children:
            self.graph.reparent(child_id, layer_id)
            await write_layer_json(self.graph.entries[child_id])
        await write_layer_json(entry)

        logger.debug("Inserted new layer %s after %s", truncate_id(layer_id), truncate_id(after.id))
        return entry

    def _extracted_tree(self, entry: LayerEntry) -> Path:
        if entry.layer_dir is None or not entry.layer_dir.is_dir():
            raise SquashError(f"Layer {truncate_id(entry.id)} has not been extracted")
        return entry.layer_dir

    async def squash(self, range_start: str, range_end: str) -> list[LayerEntry]:
        """Merge the layers after ``range_start`` up to ``range_end`` into ``range_start``.

        Layers are overlaid parents first. ``squash(x, x)`` leaves x's tree
        untouched.

        Args:
            range_start: Layer whose tree receives the merge (exclusive)
            range_end: Newest layer to merge (inclusive)

        Returns:
            The merged layers, parents first

        Raises:
            LayerNotFoundError: If either id is unknown or start is not an ancestor of end
            SquashError: If a layer involved has not been extracted or the merge fails
            MergeConflictError: If the layers cannot be overlaid
        """
        start = self.graph.get(range_start)
        layers = self.graph.between(range_start, range_end)

        target = self._extracted_tree(start)
        trees = [self._extracted_tree(entry) for entry in layers]
        lower = [self._extracted_tree(entry) for entry in self.graph.ancestors(start.id)]

        for entry in layers:
            logger.debug("Squashing %s into %s", truncate_id(entry.id), truncate_id(start.id))

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, merge_trees, target, trees, lower)
        except OSError as e:
            # MergeConflictError is not an OSError and propagates unchanged
            raise SquashError(
                f"Failed to merge layers into {truncate_id(start.id)}: {e}"
            ) from e
        return layers

    async def commit_layer(self, entry: LayerEntry, tip: LayerEntry | None = None) -> None:
        """Pack a layer's merged tree into its layer.tar and rewrite its metadata.

        Args:
            entry: The squashed layer
            tip: Newest merged layer; its runtime config carries over to ``entry``
        """
        tree = self._extracted_tree(entry)
        loop = asyncio.get_event_loop()
        count = await loop.run_in_executor(None, pack_layer, tree, entry.archive_path)

        if tip is not None and tip.id != entry.id and tip.config.config is not None:
            entry.config.config = copy.deepcopy(tip.config.config)
        entry.config.size = (await aiofiles.os.stat(entry.archive_path)).st_size
        await write_layer_json(entry)
        logger.debug("Packed %s (%d entries)", truncate_id(entry.id), count)
