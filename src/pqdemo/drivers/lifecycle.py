"""Driver lifecycle state machine and the shutdown latch."""

from __future__ import annotations

import logging
import threading
from enum import Enum

from pqdemo.errors import InvalidTransition

logger = logging.getLogger(__name__)


class DriverState(str, Enum):
    CONFIGURING = "configuring"
    CONNECTING = "connecting"
    RUNNING = "running"
    DRAINING = "draining"
    CLOSED = "closed"


TRANSITIONS: dict[DriverState, frozenset[DriverState]] = {
    DriverState.CONFIGURING: frozenset({DriverState.CONNECTING}),
    # CONNECTING -> CLOSED when connect or bind fails
    DriverState.CONNECTING: frozenset({DriverState.RUNNING, DriverState.CLOSED}),
    DriverState.RUNNING: frozenset({DriverState.DRAINING}),
    DriverState.DRAINING: frozenset({DriverState.CLOSED}),
    DriverState.CLOSED: frozenset(),
}


class Lifecycle:
    def __init__(self, name: str):
        self.name = name
        self.state = DriverState.CONFIGURING
        self.history: list[DriverState] = [self.state]

    def advance(self, target: DriverState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.name}: {self.state.value} -> {target.value}")
        logger.debug("%s: %s -> %s", self.name, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    @property
    def is_closed(self) -> bool:
        return self.state is DriverState.CLOSED


class ShutdownLatch:
    """Set once, observed many times.

    Any task may set it; the first reason wins. Observers on other threads
    see it at their next check.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def set(self, reason: str) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason
