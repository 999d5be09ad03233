"""Status board feeding the dashboard collaborator."""

from __future__ import annotations

import asyncio

from loguru import logger

from devman.core.types import StatusUpdate


class StatusBoard:
    """Keeps the latest update per session and fans updates out to subscribers."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._latest: dict[str, StatusUpdate] = {}
        self._subscribers: list[asyncio.Queue[StatusUpdate]] = []
        self._maxsize = maxsize

    def subscribe(self) -> asyncio.Queue[StatusUpdate]:
        queue: asyncio.Queue[StatusUpdate] = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[StatusUpdate]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, update: StatusUpdate) -> None:
        self._latest[update.session_id] = update
        for queue in self._subscribers:
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                logger.warning("status.subscriber.full session={} status={}", update.session_id, update.status)

    def latest(self, session_id: str) -> StatusUpdate | None:
        return self._latest.get(session_id)

    def snapshot(self) -> list[StatusUpdate]:
        return sorted(self._latest.values(), key=lambda update: update.session_id)
