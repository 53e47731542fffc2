"""docker-squash - squash the layers of a docker save archive into one."""

__version__ = "0.1.0"

from .exceptions import (
    AmbiguousExportError,
    ArchiveError,
    CleanupError,
    LayerNotFoundError,
    MergeConflictError,
    MetadataError,
    SquashCancelledError,
    SquashError,
    TagFormatError,
)
from .graph import ExportGraph
from .pipeline import run, squash_image
from .squash import SquashEngine
from .tar.writer import ImageWriter

__all__ = [
    "ExportGraph",
    "ImageWriter",
    "SquashEngine",
    "run",
    "squash_image",
    "SquashError",
    "AmbiguousExportError",
    "ArchiveError",
    "CleanupError",
    "LayerNotFoundError",
    "MergeConflictError",
    "MetadataError",
    "SquashCancelledError",
    "TagFormatError",
]
