"""Test helpers for building synthetic docker save archives."""

import io
import json
import os
import tarfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class File:
    data: bytes = b""
    mode: int = 0o644


@dataclass
class Dir:
    mode: int = 0o755


@dataclass
class Symlink:
    target: str


@dataclass
class Layer:
    """One layer of a synthetic export; parents are implied by list order."""

    id: str
    cmd: str = "/bin/sh -c true"
    entries: dict = field(default_factory=dict)
    config: dict | None = None
    created: str = "2024-01-01T00:00:00Z"


def layer_id(char: str) -> str:
    """A 64 character id made of one repeated hex digit."""
    return char * 64


BASE_ID = layer_id("a")
APP_ID = layer_id("b")
CHANGE_ID = layer_id("c")
TOP_ID = layer_id("d")


def _tarinfo(name: str, kind, size: int = 0, mode: int = 0o644) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.size = size
    info.mode = mode
    info.uid = os.getuid()
    info.gid = os.getgid()
    info.mtime = 1700000000
    return info


def write_layer_tar(path: Path, entries: dict) -> Path:
    """Write a layer.tar from ``{"dir/": Dir(), "dir/f": File(b"...")}`` style entries.

    Plain bytes values become 0644 files; keys ending in "/" or Dir values
    become directories. Missing parent directories are added.
    """
    members: dict[str, object] = {}
    for name, value in entries.items():
        name = name.rstrip("/")
        if isinstance(value, (bytes, str)):
            value = File(value.encode() if isinstance(value, str) else value)
        elif value is None:
            value = Dir()
        parts = name.split("/")
        for i in range(1, len(parts)):
            members.setdefault("/".join(parts[:i]), Dir())
        members[name] = value

    with tarfile.open(path, "w") as tar:
        for name in sorted(members):
            value = members[name]
            if isinstance(value, Dir):
                tar.addfile(_tarinfo(name, tarfile.DIRTYPE, mode=value.mode))
            elif isinstance(value, Symlink):
                info = _tarinfo(name, tarfile.SYMTYPE, mode=0o777)
                info.linkname = value.target
                tar.addfile(info)
            else:
                info = _tarinfo(name, tarfile.REGTYPE, size=len(value.data), mode=value.mode)
                tar.addfile(info, io.BytesIO(value.data))
    return path


def layer_json(layer: Layer, parent: str) -> dict:
    data = {
        "id": layer.id,
        "created": layer.created,
        "container_config": {"Cmd": ["/bin/sh", "-c", layer.cmd]},
        "architecture": "amd64",
        "os": "linux",
        "Size": 0,
    }
    if parent:
        data["parent"] = parent
    if layer.config is not None:
        data["config"] = layer.config
    return data


def write_export_dir(root: Path, layers: list[Layer], repositories: dict | None = None) -> Path:
    """Lay out an unpacked export: repositories plus <id>/{json,layer.tar,VERSION}."""
    root.mkdir(parents=True, exist_ok=True)
    parent = ""
    for layer in layers:
        layer_dir = root / layer.id
        layer_dir.mkdir()
        (layer_dir / "json").write_text(json.dumps(layer_json(layer, parent)))
        (layer_dir / "VERSION").write_text("1.0")
        if layer.entries:
            write_layer_tar(layer_dir / "layer.tar", layer.entries)
        else:
            # docker writes zero-length archives for layers without changes
            (layer_dir / "layer.tar").write_bytes(b"")
        parent = layer.id

    if repositories is not None:
        (root / "repositories").write_text(json.dumps(repositories))
    return root


def write_export_tar(path: Path, layers: list[Layer], repositories: dict | None = None) -> Path:
    """Build a docker save archive at ``path``."""
    staging = path.parent / (path.name + ".d")
    write_export_dir(staging, layers, repositories)
    with tarfile.open(path, "w") as tar:
        for child in sorted(staging.iterdir()):
            tar.add(child, arcname=child.name)
    return path


def read_archive(path: Path) -> dict[str, tarfile.TarInfo]:
    """Map member names of an archive to their TarInfo, in archive order."""
    with tarfile.open(path, "r") as tar:
        return {member.name: member for member in tar.getmembers()}


def read_member(path: Path, name: str) -> bytes:
    with tarfile.open(path, "r") as tar:
        return tar.extractfile(name).read()


def read_layer_files(archive: Path, layer: str) -> dict[str, bytes | None]:
    """Contents of a layer inside an image archive: file name -> data (None for dirs)."""
    data = read_member(archive, f"{layer}/layer.tar")
    if not data:
        return {}
    files: dict[str, bytes | None] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
        for member in tar.getmembers():
            if member.isdir():
                files[member.name] = None
            elif member.issym():
                files[member.name] = ("->" + member.linkname).encode()
            else:
                files[member.name] = tar.extractfile(member).read()
    return files


def tree_snapshot(root: Path) -> dict[str, tuple]:
    """Describe every path under ``root``: (kind, content or link target, mode)."""
    snapshot = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full = Path(dirpath) / name
            rel = str(full.relative_to(root))
            st = os.lstat(full)
            if full.is_symlink():
                snapshot[rel] = ("link", os.readlink(full), None)
            elif full.is_dir():
                snapshot[rel] = ("dir", None, st.st_mode & 0o7777)
            else:
                snapshot[rel] = ("file", full.read_bytes(), st.st_mode & 0o7777)
    return snapshot
