"""Core types for docker-squash."""

from dataclasses import dataclass, field

from ..tar.models import HistoryRecord
from ..tar.tags import parse_repository_tag


@dataclass(frozen=True)
class SquashOptions:
    """Settings for one squash run."""

    input_path: str | None = None  # None reads the archive from stdin
    output_path: str | None = None  # None writes the archive to stdout
    tag: str | None = None  # "repo[:tag]" to apply to the squashed image
    from_layer: str | None = None  # Layer id, short id or "root"
    keep_temp: bool = False
    temp_root: str | None = None

    def repository_tag(self) -> tuple[str, str] | None:
        """Parse ``tag`` into (repository, tag), or None when unset.

        Raises:
            TagFormatError: If either half is empty
        """
        if not self.tag:
            return None
        return parse_repository_tag(self.tag)


@dataclass
class SquashResult:
    """Outcome of a squash run."""

    layer_id: str
    start_id: str
    merged_ids: list[str] = field(default_factory=list)
    repository_tag: tuple[str, str] | None = None
    history: list[HistoryRecord] = field(default_factory=list)
