"""Utility functions for docker-squash."""

from .humanize import human_duration, human_size
from .identifiers import new_id, truncate_id

__all__ = ["human_duration", "human_size", "new_id", "truncate_id"]
