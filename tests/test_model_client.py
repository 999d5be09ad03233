from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
from fakes import FakeTime, make_settings, sse_message

from devman.client.auth import Credential
from devman.client.events import EndOfTurn, TextDelta
from devman.client.model_client import ModelClient, ModelRequest
from devman.errors import (
    AuthFailure,
    ContextOverflow,
    CredentialsNotFoundError,
    RateLimited,
    RequestRejected,
    StreamInterrupted,
    TransientNetwork,
)

REQUEST = ModelRequest(model="claude-test", system="", messages=[{"role": "user", "content": "hi"}])


class _FakeCredentials:
    def __init__(self, values: list[str]) -> None:
        self.values = values
        self.current = values[0]
        self.refreshes = 0

    def resolve(self) -> Credential:
        return Credential(value=self.current, kind="api_key", source="test")

    def refresh(self) -> bool:
        self.refreshes += 1
        if self.refreshes < len(self.values):
            self.current = self.values[self.refreshes]
            return True
        return False


def _ok(text: str = "hello") -> httpx.Response:
    body = "\n".join(sse_message(text)) + "\n"
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


def _client(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response],
    fake: FakeTime,
    credentials: _FakeCredentials | None = None,
    **overrides: Any,
) -> ModelClient:
    settings = make_settings(tmp_path, **overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelClient(
        settings,
        credentials or _FakeCredentials(["key-1"]),  # type: ignore[arg-type]
        http_client=http,
        sleep=fake.sleep,
        clock=fake.clock,
    )


async def _collect(client: ModelClient) -> list[object]:
    return [event async for event in client.send(REQUEST)]


@pytest.mark.asyncio
async def test_successful_stream_sends_headers_and_payload(tmp_path: Path) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _ok()

    events = await _collect(_client(tmp_path, handler, FakeTime()))

    assert events[0] == TextDelta(text="hello")
    assert isinstance(events[-1], EndOfTurn)
    assert seen[0].url.path == "/v1/messages"
    assert seen[0].headers["x-api-key"] == "key-1"
    assert seen[0].headers["anthropic-version"] == "2023-06-01"
    assert b'"stream":true' in seen[0].content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_rate_limit_waits_exactly_the_server_delays(tmp_path: Path) -> None:
    responses = [
        httpx.Response(429, headers={"retry-after": "3"}),
        httpx.Response(429, headers={"retry-after": "7"}),
        _ok(),
    ]
    fake = FakeTime()

    events = await _collect(_client(tmp_path, lambda request: responses.pop(0), fake))

    assert fake.sleeps == [3.0, 7.0]
    assert sum(fake.sleeps) == 10.0
    assert events[0] == TextDelta(text="hello")


@pytest.mark.asyncio
async def test_rate_limit_beyond_deadline_raises(tmp_path: Path) -> None:
    fake = FakeTime()
    client = _client(
        tmp_path,
        lambda request: httpx.Response(429, headers={"retry-after": "120"}),
        fake,
        call_timeout_seconds=60,
    )

    with pytest.raises(RateLimited) as exc_info:
        await _collect(client)

    assert exc_info.value.retry_after == 120.0
    assert fake.sleeps == []


@pytest.mark.asyncio
async def test_network_failures_back_off_exponentially(tmp_path: Path) -> None:
    failures = {"left": 8}

    def handler(request: httpx.Request) -> httpx.Response:
        if failures["left"]:
            failures["left"] -= 1
            raise httpx.ConnectError("connection refused", request=request)
        return _ok()

    fake = FakeTime()
    events = await _collect(_client(tmp_path, handler, fake, call_timeout_seconds=1000))

    assert fake.sleeps == [1, 2, 4, 8, 16, 32, 60, 60]
    assert events[0] == TextDelta(text="hello")


@pytest.mark.asyncio
async def test_network_retries_stop_at_the_deadline(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    fake = FakeTime()
    with pytest.raises(TransientNetwork):
        await _collect(_client(tmp_path, handler, fake, call_timeout_seconds=10))

    assert fake.sleeps == [1, 2, 4]


@pytest.mark.asyncio
async def test_server_errors_are_retried_like_network_errors(tmp_path: Path) -> None:
    responses = [httpx.Response(529, text="overloaded"), httpx.Response(503), _ok()]
    fake = FakeTime()

    await _collect(_client(tmp_path, lambda request: responses.pop(0), fake))

    assert fake.sleeps == [1, 2]


@pytest.mark.asyncio
async def test_unauthorized_refreshes_credentials_exactly_once(tmp_path: Path) -> None:
    seen_keys: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_keys.append(request.headers["x-api-key"])
        if request.headers["x-api-key"] == "stale":
            return httpx.Response(401, json={"error": {"type": "authentication_error"}})
        return _ok()

    credentials = _FakeCredentials(["stale", "fresh"])
    events = await _collect(_client(tmp_path, handler, FakeTime(), credentials))

    assert credentials.refreshes == 1
    assert seen_keys == ["stale", "fresh"]
    assert events[0] == TextDelta(text="hello")


@pytest.mark.asyncio
async def test_second_unauthorized_is_an_auth_failure(tmp_path: Path) -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401)

    credentials = _FakeCredentials(["stale", "still-stale"])
    with pytest.raises(AuthFailure):
        await _collect(_client(tmp_path, handler, FakeTime(), credentials))

    assert credentials.refreshes == 1
    assert len(calls) == 2


class _VanishingCredentials(_FakeCredentials):
    def refresh(self) -> bool:
        self.refreshes += 1
        raise CredentialsNotFoundError("no credentials found")


@pytest.mark.asyncio
async def test_unauthorized_without_replacement_credentials_fails_fast(tmp_path: Path) -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401)

    credentials = _VanishingCredentials(["stale"])
    with pytest.raises(AuthFailure, match="refresh failed"):
        await _collect(_client(tmp_path, handler, FakeTime(), credentials))

    assert credentials.refreshes == 1
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body"),
    [
        (413, "request too large"),
        (400, '{"error": {"type": "invalid_request_error", "message": "prompt is too long: 250000 tokens"}}'),
    ],
)
async def test_oversized_requests_are_context_overflows(tmp_path: Path, status: int, body: str) -> None:
    fake = FakeTime()
    with pytest.raises(ContextOverflow):
        await _collect(_client(tmp_path, lambda request: httpx.Response(status, text=body), fake))
    assert fake.sleeps == []


@pytest.mark.asyncio
async def test_other_client_errors_are_rejected_without_retry(tmp_path: Path) -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, text='{"error": {"message": "tools.0.name: invalid"}}')

    with pytest.raises(RequestRejected) as exc_info:
        await _collect(_client(tmp_path, handler, FakeTime()))

    assert exc_info.value.status_code == 400
    assert calls == [1]


class _BrokenStream(httpx.AsyncByteStream):
    def __init__(self, head: bytes) -> None:
        self.head = head

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.head
        raise httpx.ReadError("connection reset")


@pytest.mark.asyncio
async def test_break_after_delivered_events_is_a_stream_interruption(tmp_path: Path) -> None:
    head = "\n".join(sse_message("partial")[:9]) + "\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_BrokenStream(head.encode()))

    fake = FakeTime()
    received: list[object] = []
    with pytest.raises(StreamInterrupted):
        async for event in _client(tmp_path, handler, fake).send(REQUEST):
            received.append(event)

    assert received == [TextDelta(text="partial")]
    assert fake.sleeps == []
