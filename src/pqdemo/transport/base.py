"""Transport interface.

This is the small contract the drivers consume. Broker framing, TLS,
authentication and reconnection live behind it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pqdemo.errors import OperationNotSupported
from pqdemo.models.message import AckMode, InboundMessage, OutboundMessage
from pqdemo.transport.events import EventStream


@dataclass(frozen=True)
class FlowOptions:
    """How a receiver binds to its queue."""

    queue_name: str
    ack_mode: AckMode = AckMode.AUTO
    window_size: int = 10
    transacted: bool = False
    non_exclusive: bool = False
    push: bool = False  # deliver as MessageDelivered events instead of receive()

    @property
    def client_acked(self) -> bool:
        """Whether the transport waits for ``ack`` before settling a delivery.

        Pushed messages are always client-acknowledged at the broker; in auto
        mode the driver acks them itself once handling is done.
        """
        if self.transacted:
            return False
        return self.push or self.ack_mode is AckMode.CLIENT


class MessagePublisher(ABC):
    @abstractmethod
    def start(self) -> None:
        """Start the publisher; receipts are emitted on the transport's event stream."""

    @abstractmethod
    def publish(self, message: OutboundMessage, topic: str, user_context: Any = None) -> None:
        """Submit without waiting for the broker; blocks while no slot is free."""

    @abstractmethod
    def publish_await_acknowledgement(
        self, message: OutboundMessage, topic: str, timeout_ms: int
    ) -> None:
        """Submit and block until acknowledged.

        Raises :class:`~pqdemo.errors.AckTimeout` or :class:`~pqdemo.errors.PublishNack`.
        """

    @abstractmethod
    def terminate(self, grace_period_ms: int) -> None:
        """Stop accepting submissions, draining in-flight ones for up to the grace period."""


class MessageReceiver(ABC):
    @abstractmethod
    def start(self) -> None:
        """Start message delivery."""

    @abstractmethod
    def receive(self, timeout_ms: int) -> InboundMessage | None:
        """Return the next message, or None once the timeout elapses."""

    @abstractmethod
    def ack(self, message: InboundMessage) -> None:
        """Acknowledge a client-ack message."""

    def commit(self) -> None:
        raise OperationNotSupported("commit requires a transacted receiver")

    @abstractmethod
    def stop(self) -> None:
        """Pause delivery; messages stay on the queue. No-op once closed."""

    @abstractmethod
    def close(self) -> None:
        """Unbind; unacknowledged messages become eligible for redelivery.

        Closing twice is allowed.
        """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once ``close`` has run."""


class Transport(ABC):
    """A session to the broker plus the stream of events it produces."""

    name = "transport"

    def __init__(self) -> None:
        self.events = EventStream()

    @abstractmethod
    def connect(self) -> None:
        """Establish the session (blocking)."""

    @abstractmethod
    def disconnect(self) -> None:
        """Tear the session down."""

    @abstractmethod
    def create_publisher(self, back_pressure_slots: int = 1) -> MessagePublisher:
        """Create a persistent publisher that waits when its slots are full."""

    @abstractmethod
    def create_receiver(self, options: FlowOptions) -> MessageReceiver:
        """Bind a flow to ``options.queue_name``.

        Raises :class:`~pqdemo.errors.BindError` or
        :class:`~pqdemo.errors.OperationNotSupported`.
        """
