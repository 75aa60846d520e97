"""Events emitted by a transport and consumed by a driver's event task."""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Union

from pqdemo.models.message import InboundMessage, PublishReceipt


@dataclass(frozen=True)
class ServiceInterrupted:
    cause: object = None


@dataclass(frozen=True)
class ReconnectAttempt:
    detail: str = ""


@dataclass(frozen=True)
class Reconnected:
    detail: str = ""


@dataclass(frozen=True)
class FlowEvent:
    description: str
    active: bool | None = None


@dataclass(frozen=True)
class FlowFailure:
    error: Exception
    fatal: bool = False


@dataclass(frozen=True)
class ReceiptEvent:
    receipt: PublishReceipt


@dataclass(frozen=True)
class MessageDelivered:
    message: InboundMessage


TransportEvent = Union[
    ServiceInterrupted,
    ReconnectAttempt,
    Reconnected,
    FlowEvent,
    FlowFailure,
    ReceiptEvent,
    MessageDelivered,
]


class EventStream:
    """Thread-safe FIFO of transport events.

    Transport threads ``put``; exactly one driver task ``get``s.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[TransportEvent] = queue.Queue()

    def put(self, event: TransportEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> TransportEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> TransportEvent | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()
