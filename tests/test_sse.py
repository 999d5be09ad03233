import pytest
from fakes import sse, sse_message

from devman.client.events import EndOfTurn, TextDelta, ToolCallRequest, UsageMetadata
from devman.client.sse import SSEDecoder
from devman.core.types import Usage
from devman.errors import ContextOverflow, ProtocolError, StreamInterrupted


def _decode(lines: list[str]) -> list[object]:
    decoder = SSEDecoder()
    events: list[object] = []
    for line in lines:
        events.extend(decoder.feed(line))
    events.extend(decoder.close())
    return events


def test_decoder_emits_text_tool_calls_usage_and_end_of_turn_in_order() -> None:
    events = _decode(sse_message("hello", tools=[("toolu_1", "storage_read", {"path": "notes.md"})]))

    assert events == [
        TextDelta(text="hello"),
        ToolCallRequest(id="toolu_1", name="storage_read", arguments={"path": "notes.md"}),
        UsageMetadata(usage=Usage(input_tokens=12, output_tokens=7)),
        EndOfTurn(stop_reason="tool_use"),
    ]


def test_decoder_ignores_ping_comments_and_unknown_events() -> None:
    lines = sse_message("hi")
    lines[3:3] = [": keep-alive", "", *sse("ping", {"type": "ping"}), *sse("future_event", {"type": "future_event"})]

    events = _decode(lines)

    assert [event for event in events if isinstance(event, TextDelta)] == [TextDelta(text="hi")]
    assert isinstance(events[-1], EndOfTurn)


def test_decoder_tolerates_missing_blank_separator() -> None:
    lines = [line for line in sse_message("hi") if line]

    events = _decode(lines)

    assert events[0] == TextDelta(text="hi")
    assert isinstance(events[-1], EndOfTurn)


def test_malformed_json_is_a_protocol_error() -> None:
    decoder = SSEDecoder()
    decoder.feed("event: message_start")
    decoder.feed("data: {not json")
    with pytest.raises(ProtocolError):
        decoder.feed("")


def test_stream_ending_before_message_stop_is_a_protocol_error() -> None:
    lines = sse_message("hi")[:-3]
    with pytest.raises(ProtocolError):
        _decode(lines)


def test_invalid_tool_arguments_are_a_protocol_error() -> None:
    lines = sse("message_start", {"type": "message_start", "message": {"usage": {}}})
    lines += sse(
        "content_block_start",
        {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "id": "t", "name": "x"}},
    )
    lines += sse(
        "content_block_delta",
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": "{oops"}},
    )
    lines += sse("content_block_stop", {"type": "content_block_stop", "index": 0})
    with pytest.raises(ProtocolError):
        _decode(lines)


def test_unknown_content_block_type_is_a_protocol_error() -> None:
    lines = sse("message_start", {"type": "message_start", "message": {"usage": {}}})
    lines += sse(
        "content_block_start",
        {"type": "content_block_start", "index": 0, "content_block": {"type": "hologram"}},
    )
    with pytest.raises(ProtocolError):
        _decode(lines)


def test_overloaded_error_event_interrupts_the_stream() -> None:
    lines = sse("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    with pytest.raises(StreamInterrupted):
        _decode(lines)


def test_too_long_error_event_is_a_context_overflow() -> None:
    lines = sse(
        "error",
        {"type": "error", "error": {"type": "invalid_request_error", "message": "prompt is too long: 210000 tokens"}},
    )
    with pytest.raises(ContextOverflow):
        _decode(lines)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "message_start", "message": "oops"},
        {"type": "message_start", "message": {"usage": "many"}},
        {"type": "error", "error": "boom"},
    ],
)
def test_wrong_shaped_leading_events_are_protocol_errors(payload: dict[str, object]) -> None:
    decoder = SSEDecoder()
    with pytest.raises(ProtocolError):
        for line in sse(str(payload["type"]), payload):
            decoder.feed(line)


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "message_delta", "delta": "x"},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": ["output_tokens"]},
        {"type": "content_block_start", "index": 0, "content_block": "text"},
        {"type": "content_block_delta", "index": 0, "delta": None},
    ],
)
def test_wrong_shaped_events_after_start_are_protocol_errors(payload: dict[str, object]) -> None:
    lines = sse("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 1}}})
    lines += sse("content_block_start", {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}})
    lines += sse(str(payload["type"]), payload)

    with pytest.raises(ProtocolError):
        _decode(lines)
