"""Session checkpoints."""

from .store import CHECKPOINT_VERSION, Checkpoint, CheckpointStore

__all__ = ["CHECKPOINT_VERSION", "Checkpoint", "CheckpointStore"]
