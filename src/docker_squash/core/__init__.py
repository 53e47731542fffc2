"""Run configuration and lifecycle helpers."""

from .cleanup import CleanupWatcher
from .types import SquashOptions, SquashResult

__all__ = ["CleanupWatcher", "SquashOptions", "SquashResult"]
