"""Server-sent-event decoding for the Messages API stream."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from devman.client.events import EndOfTurn, StreamEvent, TextDelta, ToolCallRequest, UsageMetadata
from devman.core.types import Usage
from devman.errors import ContextOverflow, ProtocolError, StreamInterrupted

OVERFLOW_MARKERS = ("too long", "context window", "maximum context")
_RETRYABLE_ERROR_TYPES = frozenset({"overloaded_error", "api_error"})


def looks_like_overflow(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in OVERFLOW_MARKERS)


@dataclass
class _OpenBlock:
    kind: str
    tool_id: str = ""
    tool_name: str = ""
    json_parts: list[str] = field(default_factory=list)


class SSEDecoder:
    """Incremental decoder: feed raw lines, receive typed stream events.

    Events are dispatched on blank lines as the SSE framing prescribes. A
    ``ProtocolError`` is raised on malformed payloads and by :meth:`close`
    when the stream ended before ``message_stop``.
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._blocks: dict[int, _OpenBlock] = {}
        self._usage = Usage()
        self._stop_reason: str | None = None
        self._started = False
        self.finished = False

    def feed(self, line: str) -> list[StreamEvent]:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return []
        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "event":
            # Tolerate transports that drop the blank separator line.
            return self._dispatch()
        if name == "data":
            self._data.append(value)
        return []

    def close(self) -> list[StreamEvent]:
        events = self._dispatch()
        if not self.finished:
            raise ProtocolError("stream ended before message_stop")
        return events

    def _dispatch(self) -> list[StreamEvent]:
        if not self._data:
            return []
        raw = "\n".join(self._data)
        self._data = []
        if self.finished:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"malformed event payload: {raw[:200]!r}") from exc
        if not isinstance(payload, dict):
            raise ProtocolError("event payload is not an object")
        try:
            return self._handle(payload)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ProtocolError(f"invalid {payload.get('type')} event: {exc}") from exc

    def _handle(self, payload: dict[str, Any]) -> list[StreamEvent]:  # noqa: C901
        event_type = payload["type"]
        if event_type == "ping":
            return []
        if event_type == "error":
            self._raise_stream_error(_object(payload, "error", required=False))
        if event_type == "message_start":
            self._started = True
            self._usage = self._usage + _usage_from(_object(_object(payload, "message"), "usage", required=False))
            return []
        if not self._started and event_type in {"content_block_start", "content_block_delta", "message_delta"}:
            raise ProtocolError(f"{event_type} before message_start")
        if event_type == "content_block_start":
            return self._start_block(int(payload["index"]), _object(payload, "content_block"))
        if event_type == "content_block_delta":
            return self._block_delta(int(payload["index"]), _object(payload, "delta"))
        if event_type == "content_block_stop":
            return self._stop_block(int(payload["index"]))
        if event_type == "message_delta":
            self._stop_reason = _object(payload, "delta").get("stop_reason") or self._stop_reason
            usage = _object(payload, "usage", required=False)
            # output_tokens in message_delta is cumulative for the message.
            self._usage = Usage(
                input_tokens=self._usage.input_tokens + int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or self._usage.output_tokens),
                cache_read_tokens=self._usage.cache_read_tokens,
                cache_creation_tokens=self._usage.cache_creation_tokens,
            )
            return []
        if event_type == "message_stop":
            if self._blocks:
                raise ProtocolError("message_stop with unterminated content blocks")
            self.finished = True
            return [UsageMetadata(usage=self._usage), EndOfTurn(stop_reason=self._stop_reason)]
        logger.debug("model.stream.unknown_event type={}", event_type)
        return []

    def _start_block(self, index: int, block: dict[str, Any]) -> list[StreamEvent]:
        kind = block["type"]
        if kind == "text":
            self._blocks[index] = _OpenBlock(kind="text")
            text = block.get("text") or ""
            return [TextDelta(text=text)] if text else []
        if kind == "tool_use":
            self._blocks[index] = _OpenBlock(kind="tool_use", tool_id=str(block["id"]), tool_name=str(block["name"]))
            return []
        raise ProtocolError(f"unknown content block type: {kind!r}")

    def _block_delta(self, index: int, delta: dict[str, Any]) -> list[StreamEvent]:
        block = self._blocks.get(index)
        if block is None:
            raise ProtocolError(f"delta for unknown content block {index}")
        delta_type = delta["type"]
        if delta_type == "text_delta":
            if block.kind != "text":
                raise ProtocolError("text_delta on a non-text block")
            return [TextDelta(text=str(delta["text"]))]
        if delta_type == "input_json_delta":
            if block.kind != "tool_use":
                raise ProtocolError("input_json_delta on a non-tool block")
            block.json_parts.append(str(delta["partial_json"]))
            return []
        logger.debug("model.stream.unknown_delta type={}", delta_type)
        return []

    def _stop_block(self, index: int) -> list[StreamEvent]:
        block = self._blocks.pop(index, None)
        if block is None:
            raise ProtocolError(f"stop for unknown content block {index}")
        if block.kind != "tool_use":
            return []
        raw = "".join(block.json_parts).strip()
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"invalid arguments for tool call {block.tool_id}") from exc
        if not isinstance(arguments, dict):
            raise ProtocolError(f"arguments for tool call {block.tool_id} are not an object")
        return [ToolCallRequest(id=block.tool_id, name=block.tool_name, arguments=arguments)]

    @staticmethod
    def _raise_stream_error(error: dict[str, Any]) -> None:
        error_type = str(error.get("type") or "unknown_error")
        message = str(error.get("message") or error_type)
        if looks_like_overflow(message):
            raise ContextOverflow(message)
        if error_type in _RETRYABLE_ERROR_TYPES:
            raise StreamInterrupted(f"{error_type}: {message}")
        raise ProtocolError(f"{error_type}: {message}")


def _object(payload: dict[str, Any], key: str, *, required: bool = True) -> dict[str, Any]:
    """Return ``payload[key]`` as a mapping; a missing optional key reads as empty."""
    value = payload.get(key)
    if value is None and not required:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(f"{payload.get('type')} event field {key!r} is not an object")
    return value


def _usage_from(data: dict[str, Any]) -> Usage:
    return Usage(
        input_tokens=int(data.get("input_tokens") or 0),
        output_tokens=int(data.get("output_tokens") or 0),
        cache_read_tokens=int(data.get("cache_read_input_tokens") or 0),
        cache_creation_tokens=int(data.get("cache_creation_input_tokens") or 0),
    )
