"""Custom exceptions for docker-squash."""


class SquashError(Exception):
    """Base exception for all squash-related errors."""

    pass


class AmbiguousExportError(SquashError):
    """Raised when an export holds more than one image."""

    pass


class TagFormatError(SquashError):
    """Raised when a repository:tag string has an empty half."""

    pass


class LayerNotFoundError(SquashError):
    """Raised when a layer id does not resolve to a known layer."""

    pass


class MetadataError(SquashError):
    """Raised when layer metadata or the tag index cannot be read or written."""

    pass


class ArchiveError(SquashError):
    """Raised when a tar archive cannot be extracted or packed."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        message = super().__str__()
        if self.output:
            return f"{message}\n{self.output}"
        return message


class MergeConflictError(SquashError):
    """Raised when a layer cannot be overlaid onto the merged tree."""

    pass


class SquashCancelledError(SquashError):
    """Raised when the run was interrupted by a termination signal."""

    pass


class CleanupError(SquashError):
    """Raised when the working directory cannot be removed."""

    pass
