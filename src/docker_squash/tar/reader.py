"""Reading a docker save archive into the working directory."""

import asyncio
import json
import logging
import tarfile
from pathlib import Path
from typing import Any, BinaryIO

import aiofiles

from ..exceptions import ArchiveError, MetadataError

logger = logging.getLogger(__name__)

ExportSource = str | Path | BinaryIO


def _unpack(source: ExportSource, dest: Path) -> int:
    """Unpack an export archive (sync helper).

    Args:
        source: Archive path or readable binary stream
        dest: Directory to unpack into

    Returns:
        Number of members unpacked

    Raises:
        ArchiveError: If the archive cannot be read or a member escapes dest
    """
    dest.mkdir(parents=True, exist_ok=True)
    count = 0

    try:
        if isinstance(source, (str, Path)):
            tar = tarfile.open(source, "r|*")
        else:
            tar = tarfile.open(fileobj=source, mode="r|*")

        with tar:
            # Stream mode: members must be extracted as they are read
            for member in tar:
                tar.extract(member, dest, filter="data")
                count += 1
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Failed to read image archive into {dest}", str(e)) from e

    return count


async def unpack_export(source: ExportSource, dest: Path | str) -> Path:
    """Unpack a docker save archive into ``dest``.

    Args:
        source: Archive path or readable binary stream (e.g. stdin)
        dest: Directory to unpack into

    Returns:
        The destination directory

    Raises:
        ArchiveError: If the archive cannot be read
    """
    dest = Path(dest)
    loop = asyncio.get_event_loop()
    count = await loop.run_in_executor(None, _unpack, source, dest)
    logger.debug("Unpacked %d archive members into %s", count, dest)
    return dest


async def read_json_file(path: Path | str, missing_ok: bool = False) -> Any:
    """Read and parse a JSON document.

    Args:
        path: File to read
        missing_ok: Return None instead of failing if the file is absent

    Returns:
        Parsed document, or None when missing and ``missing_ok``

    Raises:
        MetadataError: If the file cannot be read or is not valid JSON
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except FileNotFoundError as e:
        if missing_ok:
            return None
        raise MetadataError(f"Metadata file not found: {path}") from e
    except OSError as e:
        raise MetadataError(f"Cannot read {path}: {e}") from e

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise MetadataError(f"Invalid JSON in {path}: {e}") from e
