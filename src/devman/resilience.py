"""Retry timing primitives shared by the model client."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field

type Clock = Callable[[], float]
type Sleeper = Callable[[float], Awaitable[None]]


def backoff_delays(initial: float = 1.0, maximum: float = 60.0, factor: float = 2.0) -> Iterator[float]:
    """Yield 1, 2, 4, ... seconds, capped at ``maximum``, forever."""
    delay = initial
    while True:
        yield min(delay, maximum)
        delay = min(delay * factor, maximum)


@dataclass
class Deadline:
    """Overall time budget for one logical call, including every retry."""

    timeout: float
    clock: Clock = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    @property
    def remaining(self) -> float:
        return max(0.0, self.timeout - (self.clock() - self.started))

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    def allows(self, delay: float) -> bool:
        return delay < self.remaining


async def default_sleep(delay: float) -> None:
    await asyncio.sleep(delay)
