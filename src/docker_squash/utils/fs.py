"""Filesystem helpers."""

import os
import shutil
import stat
from pathlib import Path


def is_real_dir(path: Path | str) -> bool:
    """True for a directory that is not a symlink."""
    try:
        return stat.S_ISDIR(os.lstat(path).st_mode)
    except FileNotFoundError:
        return False


def _grant_owner_rwx(path: str) -> None:
    mode = os.lstat(path).st_mode
    if stat.S_IMODE(mode) & stat.S_IRWXU != stat.S_IRWXU:
        os.chmod(path, stat.S_IMODE(mode) | stat.S_IRWXU)


def force_rmtree(path: Path | str) -> None:
    """Remove a tree, including entries below read-only directories.

    Layer trees carry the image's own modes (``dr-xr-xr-x`` and the like),
    which would otherwise stop an unprivileged user from emptying them.
    """
    path = str(path)
    _grant_owner_rwx(path)
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = os.path.join(dirpath, name)
            if is_real_dir(child):
                _grant_owner_rwx(child)
    shutil.rmtree(path)


def remove_path(path: Path | str) -> None:
    """Remove a file, symlink or directory tree."""
    if is_real_dir(path):
        force_rmtree(path)
    else:
        os.unlink(path)
