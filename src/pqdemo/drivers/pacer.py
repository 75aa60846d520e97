from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from pqdemo.drivers.lifecycle import ShutdownLatch


class RatePacer:
    """Holds a loop to an average rate by sleeping off what is left of each period.

    The period is ``1000 / rate`` ms; an iteration that overran its period
    sleeps zero, which still yields to the event loop.
    """

    def __init__(
        self,
        rate: int,
        latch: ShutdownLatch,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate < 1:
            raise ValueError("rate must be at least 1")
        self.rate = rate
        self.interval = 1.0 / rate
        self._latch = latch
        self._clock = clock
        self._sleep = sleep

    def mark(self) -> float:
        return self._clock()

    def remaining(self, start: float) -> float:
        return max(0.0, self.interval - (self._clock() - start))

    async def pace_iteration(self, start: float) -> float:
        delay = self.remaining(start)
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            self._latch.set("interrupted while pacing")
            raise
        return delay
