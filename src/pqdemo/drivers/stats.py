"""Throughput counters and the sampler that reports them."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rich.console import Console

from pqdemo.drivers.lifecycle import ShutdownLatch

logger = logging.getLogger(__name__)

PUBLISHED = "Published"
RECEIVED = "Received"
REDELIVERY_MARKER = "*** Redelivery detected ***"


@dataclass(frozen=True)
class WindowSample:
    sent: int
    received: int
    redelivered: bool


@dataclass
class Counters:
    """Counters shared between a driver's tasks and its stats sampler.

    ``sent``/``received``/``redelivery_seen`` cover the current reporting
    window and are reset by :meth:`drain`; the ``total_*`` fields never reset.
    """

    sent: int = 0
    received: int = 0
    redelivery_seen: bool = False
    total_sent: int = 0
    total_received: int = 0
    total_redelivered: int = 0
    nacks: int = 0
    ack_timeouts: int = 0
    commits: int = 0
    commit_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_sent(self) -> None:
        with self._lock:
            self.sent += 1
            self.total_sent += 1

    def record_received(self, redelivered: bool = False) -> None:
        with self._lock:
            self.received += 1
            self.total_received += 1
            if redelivered:
                self.redelivery_seen = True
                self.total_redelivered += 1

    def record_nack(self) -> None:
        with self._lock:
            self.nacks += 1

    def record_ack_timeout(self) -> None:
        with self._lock:
            self.ack_timeouts += 1

    def record_commit(self) -> None:
        with self._lock:
            self.commits += 1

    def record_commit_failure(self) -> None:
        with self._lock:
            self.commit_failures += 1

    def drain(self) -> WindowSample:
        """Read the window counters and reset them in one step."""
        with self._lock:
            sample = WindowSample(self.sent, self.received, self.redelivery_seen)
            self.sent = 0
            self.received = 0
            self.redelivery_seen = False
            return sample


class StatsSampler:
    """Prints ``<api> <sample> <direction> msgs/s: <n>`` once per interval."""

    def __init__(
        self,
        counters: Counters,
        *,
        api: str,
        sample_name: str,
        direction: str,
        interval: float = 1.0,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.counters = counters
        self.api = api
        self.sample_name = sample_name
        self.direction = direction
        self.interval = interval
        self.console = console or Console()
        self.emitted = 0
        self._clock = clock
        self._mark = clock()

    def format_line(self, count: int) -> str:
        return f"{self.api} {self.sample_name} {self.direction} msgs/s: {count:,}"

    def emit(self) -> WindowSample:
        sample = self.counters.drain()
        count = sample.sent if self.direction == PUBLISHED else sample.received
        line = self.format_line(count)
        self.console.print(line, highlight=False)
        logger.debug(line)
        if sample.redelivered:
            self.console.print(REDELIVERY_MARKER, style="bold yellow", highlight=False)
        self.emitted += 1
        self._mark = self._clock()
        return sample

    def maybe_emit(self) -> bool:
        """Emit if a full interval has passed since the last line."""
        if self._clock() - self._mark < self.interval:
            return False
        self.emit()
        return True

    async def run(self, latch: ShutdownLatch) -> None:
        while not latch.is_set():
            await asyncio.sleep(self.interval)
            if latch.is_set():
                break
            self.emit()
