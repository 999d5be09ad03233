"""Core data model shared by every devman component."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from devman.errors import PermissionDenied


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    COMPACTING = "compacting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}


class CapabilityTier(StrEnum):
    CHEAP = "cheap"
    DEFAULT = "default"
    HEAVY = "heavy"


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": dict(self.input)}


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}
        if self.is_error:
            data["is_error"] = True
        return data


type ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=str(data["text"]))
    if block_type == "tool_use":
        return ToolUseBlock(id=str(data["id"]), name=str(data["name"]), input=dict(data.get("input") or {}))
    if block_type == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data["tool_use_id"]),
            content=str(data.get("content", "")),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"unknown content block type: {block_type!r}")


@dataclass(frozen=True)
class Message:
    """One immutable entry of a session's conversation."""

    seq: int
    role: Role
    content: tuple[ContentBlock, ...]
    pinned: bool = False
    synthetic: bool = False

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [block for block in self.content if isinstance(block, ToolResultBlock)]

    @property
    def is_turn_boundary(self) -> bool:
        """A user message that does not carry tool results starts a new turn."""
        return self.role is Role.USER and not self.tool_results

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "role": self.role.value,
            "content": [block.to_dict() for block in self.content],
            "pinned": self.pinned,
            "synthetic": self.synthetic,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            seq=int(data["seq"]),
            role=Role(data["role"]),
            content=tuple(block_from_dict(block) for block in data["content"]),
            pinned=bool(data.get("pinned", False)),
            synthetic=bool(data.get("synthetic", False)),
        )


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    seq: int = 0


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    success: bool
    payload: str = ""
    reference: str | None = None
    error: str | None = None
    error_kind: str | None = None

    def render(self) -> str:
        if self.success:
            return self.payload
        return f"error ({self.error_kind or 'tool_failure'}): {self.error or 'unknown error'}"

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(tool_use_id=self.call_id, content=self.render(), is_error=not self.success)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
        )

    def __sub__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=max(0, self.input_tokens - other.input_tokens),
            output_tokens=max(0, self.output_tokens - other.output_tokens),
            cache_read_tokens=max(0, self.cache_read_tokens - other.cache_read_tokens),
            cache_creation_tokens=max(0, self.cache_creation_tokens - other.cache_creation_tokens),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_read_tokens=int(data.get("cache_read_tokens", 0)),
            cache_creation_tokens=int(data.get("cache_creation_tokens", 0)),
        )


@dataclass(frozen=True)
class AccessScope:
    """The set of tasks a caller's tools may touch. ``tasks=None`` means full access."""

    tasks: frozenset[str] | None = None

    @classmethod
    def full(cls) -> AccessScope:
        return cls(tasks=None)

    @classmethod
    def restricted(cls, tasks: set[str] | frozenset[str] | list[str]) -> AccessScope:
        return cls(tasks=frozenset(tasks))

    @property
    def is_full(self) -> bool:
        return self.tasks is None

    def allows(self, task: str) -> bool:
        return self.tasks is None or task in self.tasks

    def check(self, task: str) -> None:
        if not self.allows(task):
            raise PermissionDenied(task)

    def describe(self) -> str:
        if self.tasks is None:
            return "full"
        return "restricted:" + ",".join(sorted(self.tasks))


@dataclass(frozen=True)
class Attachment:
    path: str
    mime_type: str
    name: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class InboundMessage:
    """Message handed over by the external chat transport."""

    sender_id: str
    content: str
    task_hint: str | None = None
    channel: str | None = None
    attachments: tuple[Attachment, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class StatusUpdate:
    """Per-session status pushed to the dashboard collaborator."""

    session_id: str
    task_id: str
    tier: CapabilityTier
    status: SessionStatus
    turn: int
    input_tokens: int
    output_tokens: int
    cost_usd: float
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        return json.dumps(
            {
                "session_id": self.session_id,
                "task_id": self.task_id,
                "tier": self.tier.value,
                "status": self.status.value,
                "turn": self.turn,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "cost_usd": round(self.cost_usd, 6),
                "error": self.error,
                "timestamp": self.timestamp.isoformat(),
            },
            ensure_ascii=False,
        )
