"""Writing layer metadata and the squashed image archive."""

import asyncio
import io
import json
import logging
import tarfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO

import aiofiles

from ..exceptions import ArchiveError, MetadataError
from ..utils.humanize import human_duration, human_size
from ..utils.identifiers import truncate_id
from .models import HistoryRecord, LayerEntry
from .tags import DEFAULT_TAG, TagIndex

if TYPE_CHECKING:
    from ..graph import ExportGraph

logger = logging.getLogger(__name__)

LAYER_VERSION = "1.0"

ExportSink = str | Path | BinaryIO


async def write_json_file(path: Path | str, data: Any) -> None:
    """Write a JSON document.

    Raises:
        MetadataError: If the file cannot be written
    """
    try:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data))
    except OSError as e:
        raise MetadataError(f"Cannot write {path}: {e}") from e


async def write_version_file(path: Path | str) -> None:
    """Write a layer's VERSION marker."""
    try:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(LAYER_VERSION)
    except OSError as e:
        raise MetadataError(f"Cannot write {path}: {e}") from e


async def write_layer_json(entry: LayerEntry) -> None:
    """Persist a layer's metadata to ``<id>/json``."""
    await write_json_file(entry.json_path, entry.config.to_dict())


def _bytes_member(name: str, data: bytes, mtime: float) -> tuple[tarfile.TarInfo, io.BytesIO]:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = 0o644
    info.mtime = int(mtime)
    return info, io.BytesIO(data)


def _write_archive(
    layers: list[LayerEntry], repositories: TagIndex, out: ExportSink
) -> None:
    """Stream layers (parents first) and the tag index into a tar (sync helper)."""
    now = time.time()

    if isinstance(out, (str, Path)):
        tar = tarfile.open(out, "w")
    else:
        tar = tarfile.open(fileobj=out, mode="w|")

    with tar:
        for entry in layers:
            if entry.tree_path.exists():
                raise ArchiveError(
                    f"Extracted tree of layer {truncate_id(entry.id)} is still present"
                )

            dir_info = tarfile.TarInfo(entry.id)
            dir_info.type = tarfile.DIRTYPE
            dir_info.mode = 0o755
            dir_info.mtime = int(now)
            tar.addfile(dir_info)

            metadata = json.dumps(entry.config.to_dict()).encode("utf-8")
            tar.addfile(*_bytes_member(f"{entry.id}/json", metadata, now))

            layer_info = tar.gettarinfo(str(entry.archive_path), arcname=f"{entry.id}/layer.tar")
            with open(entry.archive_path, "rb") as fh:
                tar.addfile(layer_info, fh)

            version = LAYER_VERSION.encode("utf-8")
            tar.addfile(*_bytes_member(f"{entry.id}/VERSION", version, now))

        index = json.dumps(repositories).encode("utf-8")
        tar.addfile(*_bytes_member("repositories", index, now))


class ImageWriter:
    """Writes the retained layer chain of an ExportGraph as a docker save archive."""

    def __init__(self, graph: "ExportGraph") -> None:
        self.graph = graph

    async def write_tag(self, repository: str, tag: str | None, layer_id: str) -> None:
        """Point ``repository:tag`` at a layer and rewrite the repositories file.

        The repository's previous tags are replaced.

        Args:
            repository: Repository name
            tag: Tag name (defaults to "latest")
            layer_id: Layer the tag should resolve to
        """
        self.graph.get(layer_id)
        tag = tag or DEFAULT_TAG
        self.graph.repositories[repository] = {tag: layer_id}
        await write_json_file(self.graph.path / "repositories", self.graph.repositories)
        logger.info("Tagged %s as %s:%s", truncate_id(layer_id), repository, tag)

    def retarget_tags(self, tip_id: str) -> list[str]:
        """Re-point tags at layers outside the retained chain onto ``tip_id``.

        Returns:
            The "repo:tag" names that were moved
        """
        retained = {entry.id for entry in self.graph.chain(tip_id)}
        moved = []
        for repo_name, tags in self.graph.repositories.items():
            for tag, layer_id in tags.items():
                if layer_id not in retained:
                    tags[tag] = tip_id
                    moved.append(f"{repo_name}:{tag}")
        for name in moved:
            logger.debug("Re-pointed %s at %s", name, truncate_id(tip_id))
        return moved

    async def serialize(self, tip_id: str, out: ExportSink) -> None:
        """Write the chain from the root to ``tip_id`` and the tag index.

        Args:
            tip_id: Newest layer to keep; layers past it are left out
            out: Output archive path or writable binary stream

        Raises:
            ArchiveError: If writing fails or an extracted tree was not removed
        """
        layers = self.graph.chain(tip_id)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None, _write_archive, layers, self.graph.repositories, out
            )
        except (tarfile.TarError, OSError) as e:
            raise ArchiveError("Failed to write image archive", str(e)) from e
        logger.debug("Wrote %d layers", len(layers))

    def history(
        self, tip_id: str, squashed_id: str | None = None, now: datetime | None = None
    ) -> list[HistoryRecord]:
        """Describe the chain from the root to ``tip_id``, root first."""
        now = now or datetime.now(timezone.utc)
        records = []
        for entry in self.graph.chain(tip_id):
            created = entry.config.created_at()
            since = f"{human_duration(now - created)} ago" if created else "N/A"
            records.append(
                HistoryRecord(
                    id=entry.id,
                    short_id=truncate_id(entry.id),
                    created=created,
                    created_since=since,
                    created_by=entry.config.created_by,
                    size=entry.config.size,
                    squashed=entry.id == squashed_id,
                )
            )
        return records


def format_history(records: list[HistoryRecord], width: int = 60) -> str:
    """Render history records as the table printed after a squash."""
    lines = []
    for record in records:
        created_by = record.created_by
        if len(created_by) > width:
            created_by = created_by[:width]
        marker = "->" if record.squashed else "- "
        lines.append(
            f"  {marker} {record.short_id}  {record.created_since:<22} "
            f"{human_size(record.size):>9}  {created_by}"
        )
    return "\n".join(lines)
