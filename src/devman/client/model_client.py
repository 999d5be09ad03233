"""Streaming client for the Messages API."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from devman.client.auth import CredentialResolver
from devman.client.events import StreamEvent
from devman.client.sse import SSEDecoder, looks_like_overflow
from devman.config import Settings
from devman.errors import (
    AuthFailure,
    ContextOverflow,
    CredentialsNotFoundError,
    RateLimited,
    RequestRejected,
    StreamInterrupted,
    TransientNetwork,
)
from devman.resilience import Clock, Deadline, Sleeper, backoff_delays, default_sleep

MESSAGES_PATH = "/v1/messages"


@dataclass(frozen=True)
class ModelRequest:
    model: str
    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 16384

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self.messages,
            "stream": True,
        }
        if self.system:
            payload["system"] = self.system
        if self.tools:
            payload["tools"] = self.tools
        return payload


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class ModelClient:
    """Send one request and stream back typed events.

    Retries happen only before the first event is delivered. Once events
    have reached the caller a broken connection surfaces as
    ``StreamInterrupted`` so the caller can discard its partial state.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialResolver,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleeper = default_sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.stream_idle_timeout_seconds, connect=settings.connect_timeout_seconds)
        )
        self._owns_http = http_client is None
        self._sleep = sleep
        self._clock = clock
        self._url = settings.api_base.rstrip("/") + MESSAGES_PATH

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "anthropic-version": self._settings.api_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        headers.update(self._credentials.resolve().headers())
        return headers

    async def send(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:  # noqa: C901
        deadline = Deadline(self._settings.call_timeout_seconds, clock=self._clock)
        delays = backoff_delays(self._settings.backoff_initial_seconds, self._settings.backoff_max_seconds)
        payload = request.to_payload()
        refreshed = False
        attempt = 0

        while True:
            attempt += 1
            delivered = False
            status = 200
            body = ""
            retry_after: float | None = None
            logger.info("model.request.start model={} attempt={}", request.model, attempt)
            try:
                async with self._http.stream("POST", self._url, json=payload, headers=self._headers()) as response:
                    status = response.status_code
                    if status == 200:
                        decoder = SSEDecoder()
                        async for line in response.aiter_lines():
                            for event in decoder.feed(line):
                                delivered = True
                                yield event
                        for event in decoder.close():
                            yield event
                        logger.info("model.request.end model={} attempt={}", request.model, attempt)
                        return
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    retry_after = _retry_after(response)
            except httpx.TransportError as exc:
                if delivered:
                    logger.warning("model.stream.interrupted model={} error={}", request.model, exc)
                    raise StreamInterrupted(f"stream interrupted: {exc}") from exc
                delay = next(delays)
                if not deadline.allows(delay):
                    raise TransientNetwork(f"network failure after {attempt} attempt(s): {exc}") from exc
                logger.warning("model.request.retry reason=network delay={} error={}", delay, exc)
                await self._sleep(delay)
                continue

            if status == 401:
                if refreshed:
                    raise AuthFailure("credentials rejected after refresh")
                refreshed = True
                try:
                    self._credentials.refresh()
                except CredentialsNotFoundError as exc:
                    raise AuthFailure(f"credentials rejected and refresh failed: {exc}") from exc
                logger.warning("model.request.retry reason=unauthorized")
                continue
            if status == 429:
                wait = retry_after if retry_after is not None else next(delays)
                if not deadline.allows(wait):
                    raise RateLimited("rate limit wait exceeds call deadline", retry_after=wait)
                logger.warning("model.request.retry reason=rate_limited delay={}", wait)
                await self._sleep(wait)
                continue
            if status >= 500:
                delay = next(delays)
                if not deadline.allows(delay):
                    raise TransientNetwork(f"service unavailable (HTTP {status}) after {attempt} attempt(s)")
                logger.warning("model.request.retry reason=http_{} delay={}", status, delay)
                await self._sleep(delay)
                continue
            if status == 413 or (status == 400 and looks_like_overflow(body)):
                raise ContextOverflow(f"request exceeds context window (HTTP {status})")
            raise RequestRejected(f"HTTP {status}: {body[:500]}", status_code=status)
