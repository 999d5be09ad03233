"""Versioned, atomically replaced session checkpoints."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from loguru import logger

from devman.core.types import CapabilityTier, SessionStatus, Usage
from devman.errors import CheckpointError, CheckpointVersionError, CheckpointWriteFailure
from devman.storage.atomic import atomic_write_text

CHECKPOINT_VERSION = 1
CHECKPOINT_SUFFIX = ".json"


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    task: str
    tier: CapabilityTier
    model: str
    status: SessionStatus
    turn: int
    window: dict[str, Any]
    usage: Usage = field(default_factory=Usage)
    consumer: str = ""
    interactive: bool = False
    sequence: int = 0
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def resumable(self) -> bool:
        return not self.status.terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": CHECKPOINT_VERSION,
            "session_id": self.session_id,
            "task": self.task,
            "tier": self.tier.value,
            "model": self.model,
            "status": self.status.value,
            "turn": self.turn,
            "usage": self.usage.to_dict(),
            "consumer": self.consumer,
            "interactive": self.interactive,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "window": self.window,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise CheckpointVersionError(f"unsupported checkpoint version: {version!r}")
        try:
            return cls(
                session_id=str(data["session_id"]),
                task=str(data["task"]),
                tier=CapabilityTier(data["tier"]),
                model=str(data["model"]),
                status=SessionStatus(data["status"]),
                turn=int(data["turn"]),
                window=dict(data["window"]),
                usage=Usage.from_dict(data.get("usage")),
                consumer=str(data.get("consumer", "")),
                interactive=bool(data.get("interactive", False)),
                sequence=int(data.get("sequence", 0)),
                created_at=str(data.get("created_at", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CheckpointError(f"malformed checkpoint: {exc}") from exc


class CheckpointStore:
    """One JSON file per session under ``<home>/checkpoints``."""

    def __init__(self, home: Path) -> None:
        self.root = home / "checkpoints"

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{quote(session_id, safe='')}{CHECKPOINT_SUFFIX}"

    def save(self, checkpoint: Checkpoint) -> Path:
        path = self.path_for(checkpoint.session_id)
        try:
            atomic_write_text(path, json.dumps(checkpoint.to_dict(), ensure_ascii=False))
        except OSError as exc:
            logger.error("checkpoint.write.error session={} error={}", checkpoint.session_id, exc)
            raise CheckpointWriteFailure(f"failed to write checkpoint for {checkpoint.session_id}: {exc}") from exc
        logger.debug(
            "checkpoint.write session={} turn={} sequence={}",
            checkpoint.session_id,
            checkpoint.turn,
            checkpoint.sequence,
        )
        return path

    def load(self, session_id: str) -> Checkpoint | None:
        path = self.path_for(session_id)
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CheckpointError(f"corrupt checkpoint {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CheckpointError(f"corrupt checkpoint {path}: not an object")
        return Checkpoint.from_dict(data)

    def delete(self, session_id: str) -> None:
        self.path_for(session_id).unlink(missing_ok=True)

    def list_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            unquote(path.name.removesuffix(CHECKPOINT_SUFFIX)) for path in self.root.glob(f"*{CHECKPOINT_SUFFIX}")
        )
