"""Task storage and atomic file writes."""

from .atomic import atomic_write_bytes, atomic_write_text
from .tasks import TaskStore

__all__ = ["TaskStore", "atomic_write_bytes", "atomic_write_text"]
