"""Data models for layer metadata inside a docker save archive."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Keys of the legacy layer json that LayerConfig models explicitly.
_KNOWN_KEYS = ("id", "parent", "created", "container_config", "config", "comment", "Size")


@dataclass
class LayerConfig:
    """Legacy (v1) layer metadata, as stored in ``<id>/json``."""

    id: str
    parent: str = ""
    created: str = ""
    container_config: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] | None = None
    comment: str = ""
    size: int = 0
    extra: dict[str, Any] = field(default_factory=dict)  # Keys we pass through

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LayerConfig":
        """Build a LayerConfig from a parsed layer json document.

        Args:
            data: Parsed json object

        Returns:
            LayerConfig instance

        Raises:
            ValueError: If the document has no usable id
        """
        if not isinstance(data, dict):
            raise ValueError("layer json must be an object")

        layer_id = data.get("id")
        if not isinstance(layer_id, str) or not layer_id:
            raise ValueError("layer json has no id")

        return cls(
            id=layer_id,
            parent=data.get("parent") or "",
            created=data.get("created") or "",
            container_config=data.get("container_config") or {},
            config=data.get("config"),
            comment=data.get("comment") or "",
            size=int(data.get("Size") or 0),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the legacy layer json layout."""
        data: dict[str, Any] = dict(self.extra)
        data["id"] = self.id
        if self.parent:
            data["parent"] = self.parent
        data["created"] = self.created
        data["container_config"] = self.container_config
        if self.config is not None:
            data["config"] = self.config
        if self.comment:
            data["comment"] = self.comment
        data["Size"] = self.size
        return data

    @property
    def cmd(self) -> list[str]:
        return list(self.container_config.get("Cmd") or [])

    @property
    def created_by(self) -> str:
        return " ".join(self.cmd)

    def created_at(self) -> datetime | None:
        """Parse the creation timestamp (RFC 3339), or None if unparseable."""
        if not self.created:
            return None
        value = self.created.replace("Z", "+00:00")
        # Docker writes nanoseconds; fromisoformat only takes microseconds
        if "." in value:
            head, _, tail = value.partition(".")
            digits = ""
            for ch in tail:
                if not ch.isdigit():
                    break
                digits += ch
            zone = tail[len(digits):]
            value = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
        try:
            created = datetime.fromisoformat(value)
        except ValueError:
            return None
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created


@dataclass
class LayerEntry:
    """A layer directory of the working set.

    ``layer_dir`` points at the extracted diff tree; it is None until
    the layer has been extracted and again after the tree is removed.
    """

    config: LayerConfig
    path: Path
    layer_dir: Path | None = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def parent(self) -> str:
        return self.config.parent

    @property
    def json_path(self) -> Path:
        return self.path / "json"

    @property
    def archive_path(self) -> Path:
        return self.path / "layer.tar"

    @property
    def version_path(self) -> Path:
        return self.path / "VERSION"

    @property
    def tree_path(self) -> Path:
        """Where the extracted diff tree lives, whether or not it exists yet."""
        return self.path / "layer"


@dataclass
class HistoryRecord:
    """One line of image history, root first."""

    id: str
    short_id: str
    created: datetime | None
    created_since: str
    created_by: str
    size: int
    squashed: bool = False
