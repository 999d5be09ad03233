"""Typed events produced while streaming one model response."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from devman.core.types import Usage


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class UsageMetadata:
    usage: Usage


@dataclass(frozen=True)
class EndOfTurn:
    stop_reason: str | None


type StreamEvent = TextDelta | ToolCallRequest | UsageMetadata | EndOfTurn
