"""Per-tier concurrency admission."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass

from loguru import logger

from devman.core.types import CapabilityTier


@dataclass(frozen=True)
class TierUsage:
    tier: CapabilityTier
    budget: int
    in_use: int
    waiting: int


class TierPool:
    """FIFO admission per tier; tiers with no budget queue behind the default tier."""

    def __init__(self, budgets: Mapping[CapabilityTier, int]) -> None:
        if budgets.get(CapabilityTier.DEFAULT, 0) < 1:
            raise ValueError("the default tier needs at least one slot")
        self._budgets = {tier: max(0, budgets.get(tier, 0)) for tier in CapabilityTier}
        self._in_use = dict.fromkeys(CapabilityTier, 0)
        self._waiters: dict[CapabilityTier, deque[asyncio.Future[None]]] = {tier: deque() for tier in CapabilityTier}
        self._lock = asyncio.Lock()

    @property
    def total(self) -> int:
        return sum(self._budgets.values())

    def queue_for(self, tier: CapabilityTier) -> CapabilityTier:
        return tier if self._budgets[tier] > 0 else CapabilityTier.DEFAULT

    async def acquire(self, tier: CapabilityTier) -> CapabilityTier:
        """Wait for a slot; return the tier whose budget it was charged to."""
        queue = self.queue_for(tier)
        async with self._lock:
            if self._in_use[queue] < self._budgets[queue] and not self._waiters[queue]:
                self._in_use[queue] += 1
                return queue
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[queue].append(waiter)
            logger.debug("pool.wait tier={} waiting={}", queue, len(self._waiters[queue]))
        try:
            await waiter
        except asyncio.CancelledError:
            async with self._lock:
                if waiter.done() and not waiter.cancelled():
                    self._hand_over(queue)
                else:
                    self._waiters[queue].remove(waiter)
            raise
        return queue

    async def release(self, queue: CapabilityTier) -> None:
        async with self._lock:
            self._hand_over(queue)

    def _hand_over(self, queue: CapabilityTier) -> None:
        # Caller holds the lock. A slot passes straight to the oldest waiter.
        waiters = self._waiters[queue]
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._in_use[queue] -= 1

    @asynccontextmanager
    async def slot(self, tier: CapabilityTier) -> AsyncIterator[CapabilityTier]:
        queue = await self.acquire(tier)
        try:
            yield queue
        finally:
            await self.release(queue)

    def usage(self) -> list[TierUsage]:
        return [
            TierUsage(tier=tier, budget=self._budgets[tier], in_use=self._in_use[tier], waiting=len(self._waiters[tier]))
            for tier in CapabilityTier
        ]
