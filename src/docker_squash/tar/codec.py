"""Extraction and packing of layer diff archives (``layer.tar``)."""

import errno
import logging
import os
import tarfile
from pathlib import Path
from typing import Iterator

from ..exceptions import ArchiveError

logger = logging.getLogger(__name__)

# pax header namespace GNU tar and docker use for extended attributes
XATTR_PAX_PREFIX = "SCHILY.xattr."

_UNSUPPORTED = (errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENODATA)


def read_xattrs(path: Path | str) -> dict[str, bytes]:
    """Read the extended attributes of a path without following symlinks.

    Returns an empty mapping on platforms or filesystems without xattrs.
    """
    if not hasattr(os, "listxattr"):
        return {}

    try:
        names = os.listxattr(path, follow_symlinks=False)
        return {
            name: os.getxattr(path, name, follow_symlinks=False) for name in names
        }
    except OSError as e:
        if e.errno in _UNSUPPORTED:
            return {}
        raise


def write_xattrs(path: Path | str, attrs: dict[str, bytes]) -> None:
    """Apply extended attributes to a path without following symlinks.

    Attributes the filesystem or our privileges do not allow are logged
    and skipped; other failures are raised.
    """
    if not attrs or not hasattr(os, "setxattr"):
        return

    for name, value in attrs.items():
        try:
            os.setxattr(path, name, value, follow_symlinks=False)
        except OSError as e:
            if e.errno in _UNSUPPORTED or e.errno == errno.EPERM:
                logger.warning("Cannot restore xattr %s on %s: %s", name, path, e)
                continue
            raise


def _member_filter(dest: str):
    """Build a tarfile extraction filter that keeps members verbatim.

    Ownership, permission bits (setuid included) and device nodes are
    preserved; only members resolving outside ``dest`` are refused.
    """
    root = os.path.realpath(dest)

    def _inside(name: str) -> bool:
        target = os.path.realpath(os.path.join(root, name.lstrip("/")))
        return target == root or target.startswith(root + os.sep)

    def _filter(member: tarfile.TarInfo, path: str) -> tarfile.TarInfo:
        if not _inside(member.name):
            raise tarfile.OutsideDestinationError(member, member.name)
        if member.islnk() and not _inside(member.linkname):
            raise tarfile.LinkOutsideDestinationError(member, member.linkname)
        if member.name.startswith("/"):
            member = member.replace(name=member.name.lstrip("/"), deep=False)
        if member.islnk() and member.linkname.startswith("/"):
            member = member.replace(linkname=member.linkname.lstrip("/"), deep=False)
        return member

    return _filter


def _xattr_members(members: list[tarfile.TarInfo]) -> Iterator[tuple[str, dict[str, bytes]]]:
    for member in members:
        attrs = {
            key[len(XATTR_PAX_PREFIX):]: value.encode("utf-8", "surrogateescape")
            for key, value in member.pax_headers.items()
            if key.startswith(XATTR_PAX_PREFIX)
        }
        if attrs:
            yield member.name, attrs


def extract_layer(archive_path: Path | str, dest: Path | str) -> int:
    """Extract a layer archive into ``dest`` preserving ownership and modes.

    Docker produces zero-length layer.tar files for layers with no
    filesystem changes. Those are not valid tar files but stand for an
    empty diff, so they extract to an empty directory.

    Args:
        archive_path: Path to the layer archive
        dest: Destination directory, created if missing

    Returns:
        Number of archive members extracted

    Raises:
        ArchiveError: If the archive cannot be read or extracted
    """
    archive_path = Path(archive_path)
    dest = Path(dest)

    try:
        size = archive_path.stat().st_size
    except OSError as e:
        raise ArchiveError(f"Cannot stat layer archive {archive_path}", str(e)) from e

    dest.mkdir(parents=True, exist_ok=True)
    if size == 0:
        return 0

    try:
        with tarfile.open(archive_path, "r") as tar:
            tar.errorlevel = 1
            members = tar.getmembers()
            tar.extractall(
                dest,
                members=members,
                numeric_owner=True,
                filter=_member_filter(str(dest)),
            )
            for name, attrs in _xattr_members(members):
                write_xattrs(dest / name.lstrip("/"), attrs)
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Failed to extract {archive_path} into {dest}", str(e)) from e

    return len(members)


def walk_tree(root: Path | str) -> Iterator[str]:
    """Yield every path below ``root`` as a sorted, parent-first relative path."""
    root = str(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, root)
        if rel_dir != ".":
            yield rel_dir.replace(os.sep, "/")
        # os.walk lists symlinks to directories as dirnames but never enters them
        links = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
        for name in sorted(filenames + links):
            rel = os.path.join(rel_dir, name) if rel_dir != "." else name
            yield rel.replace(os.sep, "/")


def pack_layer(src_dir: Path | str, archive_path: Path | str) -> int:
    """Pack a directory tree into a layer archive.

    Entries are written in sorted order with numeric ownership, modes and
    extended attributes, so extracting the result reproduces the tree.
    Hard links inside the tree are stored as tar hard links.

    Args:
        src_dir: Directory to pack
        archive_path: Archive to create (overwritten if present)

    Returns:
        Number of entries written

    Raises:
        ArchiveError: If the tree cannot be read or the archive written
    """
    src_dir = Path(src_dir)
    count = 0

    try:
        with tarfile.open(archive_path, "w", format=tarfile.PAX_FORMAT) as tar:
            for rel in walk_tree(src_dir):
                full = src_dir / rel
                tarinfo = tar.gettarinfo(str(full), arcname=rel)
                if tarinfo is None:
                    # sockets have no tar representation
                    logger.debug("Skipping unsupported file type %s", full)
                    continue

                for name, value in read_xattrs(full).items():
                    tarinfo.pax_headers[XATTR_PAX_PREFIX + name] = value.decode(
                        "utf-8", "surrogateescape"
                    )

                if tarinfo.isreg():
                    with open(full, "rb") as fh:
                        tar.addfile(tarinfo, fh)
                else:
                    tar.addfile(tarinfo)
                count += 1
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Failed to pack {src_dir} into {archive_path}", str(e)) from e

    return count
