"""In-memory async bus between the chat transport and the runtime."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from devman.core.types import InboundMessage


@dataclass(frozen=True)
class OutboundMessage:
    """Reply handed back to the chat transport."""

    sender_id: str
    content: str
    channel: str | None = None
    session_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


async def _take[T](queue: asyncio.Queue[T], timeout_seconds: float | None) -> T | None:
    if timeout_seconds is None:
        return await queue.get()
    try:
        async with asyncio.timeout(timeout_seconds):
            return await queue.get()
    except TimeoutError:
        return None


class MessageBus:
    """Inbound chat messages for the runtime and replies for the transport.

    ``max_pending`` bounds the inbound side so a flood of chat messages
    pushes back on the transport instead of queueing without limit.
    Replies are never bounded; the runtime must not block on a slow reader.
    """

    def __init__(self, *, max_pending: int = 0) -> None:
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=max_pending)
        self._outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()

    @property
    def pending_inbound(self) -> int:
        return self._inbound.qsize()

    @property
    def pending_outbound(self) -> int:
        return self._outbound.qsize()

    async def publish_inbound(self, message: InboundMessage) -> None:
        """Queue ``message``, waiting while the inbound side is full."""
        await self._inbound.put(message)
        logger.debug("bus.inbound sender={} channel={}", message.sender_id, message.channel)

    def offer_inbound(self, message: InboundMessage) -> bool:
        """Queue ``message`` without waiting; False when the inbound side is full."""
        try:
            self._inbound.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("bus.inbound.rejected sender={} pending={}", message.sender_id, self.pending_inbound)
            return False
        logger.debug("bus.inbound sender={} channel={}", message.sender_id, message.channel)
        return True

    async def publish_outbound(self, message: OutboundMessage) -> None:
        self._outbound.put_nowait(message)
        logger.debug("bus.outbound sender={} error={}", message.sender_id, message.error)

    async def next_inbound(self, timeout_seconds: float | None = None) -> InboundMessage | None:
        return await _take(self._inbound, timeout_seconds)

    async def next_outbound(self, timeout_seconds: float | None = None) -> OutboundMessage | None:
        return await _take(self._outbound, timeout_seconds)
