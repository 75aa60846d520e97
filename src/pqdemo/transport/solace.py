"""Transport adapter over the Solace PubSub+ Python API (``solace-pubsubplus``).

SDK callbacks run on SDK-owned threads; they only translate what they get
into :mod:`pqdemo.transport.events` and put it on the event stream.
"""

from __future__ import annotations

import logging
from typing import Any

from solace.messaging.config.retry_strategy import RetryStrategy
from solace.messaging.errors.pubsubplus_client_error import (
    IllegalStateError,
    PubSubPlusClientError,
    PubSubTimeoutError,
)
from solace.messaging.messaging_service import (
    MessagingService,
    ReconnectionAttemptListener,
    ReconnectionListener,
    ServiceEvent,
    ServiceInterruptionListener,
)
from solace.messaging.publisher.persistent_message_publisher import (
    MessagePublishReceiptListener,
)
from solace.messaging.receiver.message_receiver import MessageHandler
from solace.messaging.resources.queue import Queue
from solace.messaging.resources.topic import Topic

from pqdemo.errors import (
    AckTimeout,
    BindError,
    CommitFailed,
    OperationNotSupported,
    PublishNack,
    SubmitFailure,
    TransportFatal,
)
from pqdemo.models.config import DemoConfig
from pqdemo.models.message import (
    QUEUE_PARTITION_KEY,
    InboundMessage,
    OutboundMessage,
    PublishReceipt,
)
from pqdemo.transport.base import FlowOptions, MessagePublisher, MessageReceiver, Transport
from pqdemo.transport.events import (
    EventStream,
    FlowEvent,
    FlowFailure,
    MessageDelivered,
    ReceiptEvent,
    ReconnectAttempt,
    Reconnected,
    ServiceInterrupted,
)

logger = logging.getLogger(__name__)

HOST = "solace.messaging.transport.host"
VPN_NAME = "solace.messaging.service.vpn-name"
USERNAME = "solace.messaging.authentication.basic.username"
PASSWORD = "solace.messaging.authentication.basic.password"
RECONNECTION_ATTEMPTS = "solace.messaging.transport.reconnection-attempts"
RETRIES_PER_HOST = "solace.messaging.transport.connection.retries-per-host"

# JCSMP-style short keys still found in older consumer.properties files
SHORT_KEYS = {
    "host": HOST,
    "vpn_name": VPN_NAME,
    "username": USERNAME,
    "password": PASSWORD,
}

# Consumed here rather than handed to the SDK. sub_ack_window_size becomes
# FlowOptions.window_size; the receiver builders expose no flow-window setting,
# so the broker-side default window applies to Solace flows.
LOCAL_KEYS = frozenset({RECONNECTION_ATTEMPTS, RETRIES_PER_HOST, "sub_ack_window_size"})

RECONNECT_INTERVAL_MS = 3000
RECEIVER_TERMINATE_GRACE_MS = 1000


def service_properties(config: DemoConfig) -> dict[str, Any]:
    """Translate the operator's property bag into SDK service properties."""
    props: dict[str, Any] = {}
    for key, value in config.transport_properties.items():
        if key in LOCAL_KEYS:
            continue
        props[SHORT_KEYS.get(key, key)] = value
    # Long keys win over their short spellings
    for short, long in SHORT_KEYS.items():
        if short in config.transport_properties and long in config.transport_properties:
            props[long] = config.transport_properties[long]
    props.setdefault(VPN_NAME, config.vpn_name)
    props[RETRIES_PER_HOST] = config.connect_retries_per_host
    return props


def _describe(event: ServiceEvent) -> str:
    return f"{event.get_message()} ({event.get_broker_uri()})"


def _is_not_supported(error: Exception) -> bool:
    text = str(error).lower()
    return "not supported" in text or "permission" in text


class _ServiceListener(ReconnectionListener, ReconnectionAttemptListener, ServiceInterruptionListener):
    def __init__(self, events: EventStream):
        self._events = events

    def on_reconnected(self, e: ServiceEvent):
        self._events.put(Reconnected(_describe(e)))

    def on_reconnecting(self, e: ServiceEvent):
        self._events.put(ReconnectAttempt(_describe(e)))

    def on_service_interrupted(self, e: ServiceEvent):
        self._events.put(ServiceInterrupted(e.get_cause() or _describe(e)))


class _ReceiptListener(MessagePublishReceiptListener):
    def __init__(self, events: EventStream):
        self._events = events

    def on_publish_receipt(self, publish_receipt):
        # user_context is the (message, caller context) pair set in publish()
        context = publish_receipt.user_context
        if not isinstance(context, tuple):
            logger.debug("Receipt without correlation context: %s", publish_receipt)
            return
        message, user_context = context
        receipt = PublishReceipt(message, user_context, publish_receipt.exception)
        self._events.put(ReceiptEvent(receipt))


def _to_inbound(message) -> InboundMessage:
    return InboundMessage(
        payload=message.get_payload_as_bytes() or b"",
        redelivered=message.is_redelivered(),
        partition_key=message.get_property(QUEUE_PARTITION_KEY),
        destination=message.get_destination_name(),
        handle=message,
    )


class _FlowHandler(MessageHandler):
    def __init__(self, events: EventStream):
        self._events = events

    def on_message(self, message):
        self._events.put(MessageDelivered(_to_inbound(message)))


class SolacePublisher(MessagePublisher):
    def __init__(self, service: MessagingService, events: EventStream, slots: int):
        self._service = service
        self._publisher = (
            service.create_persistent_message_publisher_builder()
            .on_back_pressure_wait(slots)
            .build()
        )
        self._publisher.set_message_publish_receipt_listener(_ReceiptListener(events))

    def start(self) -> None:
        try:
            self._publisher.start()
        except PubSubPlusClientError as e:
            raise TransportFatal(f"Could not start publisher: {e}") from e

    def _build(self, message: OutboundMessage):
        builder = self._service.message_builder()
        for key, value in message.properties.items():
            builder = builder.with_property(key, value)
        return builder.build(message.payload)

    def publish(self, message: OutboundMessage, topic: str, user_context: Any = None) -> None:
        try:
            self._publisher.publish(
                self._build(message), Topic.of(topic), user_context=(message, user_context)
            )
        except PubSubPlusClientError as e:
            raise SubmitFailure(str(e)) from e

    def publish_await_acknowledgement(
        self, message: OutboundMessage, topic: str, timeout_ms: int
    ) -> None:
        try:
            self._publisher.publish_await_acknowledgement(
                self._build(message), Topic.of(topic), timeout_ms
            )
        except PubSubTimeoutError as e:
            raise AckTimeout(str(e)) from e
        except IllegalStateError as e:
            raise SubmitFailure(str(e)) from e
        except PubSubPlusClientError as e:
            raise PublishNack(str(e)) from e

    def terminate(self, grace_period_ms: int) -> None:
        self._publisher.terminate(grace_period_ms)


class SolaceReceiver(MessageReceiver):
    def __init__(self, receiver, options: FlowOptions, events: EventStream, tx_service=None):
        self._receiver = receiver
        self.options = options
        self._events = events
        self._tx_service = tx_service
        self._paused = False
        self._closed = False

    def start(self) -> None:
        if self.options.push:
            self._receiver.receive_async(_FlowHandler(self._events))
        if self._paused:
            self._receiver.resume()
            self._paused = False
        self._events.put(
            FlowEvent(f"Flow active on queue '{self.options.queue_name}'", active=True)
        )

    def receive(self, timeout_ms: int) -> InboundMessage | None:
        try:
            message = self._receiver.receive_message(timeout=timeout_ms)
        except PubSubPlusClientError as e:
            self._events.put(FlowFailure(e, fatal=True))
            raise TransportFatal(str(e)) from e
        return None if message is None else _to_inbound(message)

    def ack(self, message: InboundMessage) -> None:
        if self.options.client_acked:
            self._receiver.ack(message.handle)

    def commit(self) -> None:
        if self._tx_service is None:
            super().commit()
        try:
            self._tx_service.commit()
        except PubSubPlusClientError as e:
            raise CommitFailed(str(e)) from e

    @property
    def closed(self) -> bool:
        return self._closed

    def stop(self) -> None:
        if self._closed or self._paused or self._tx_service is not None:
            return
        self._receiver.pause()
        self._paused = True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._receiver.terminate(RECEIVER_TERMINATE_GRACE_MS)
        if self._tx_service is not None:
            self._tx_service.disconnect()


class SolaceTransport(Transport):
    name = "solace"

    def __init__(self, config: DemoConfig):
        super().__init__()
        self.config = config
        self._service: MessagingService | None = None

    def connect(self) -> None:
        retry = RetryStrategy.parametrized_retry(
            self.config.reconnect_retries, RECONNECT_INTERVAL_MS
        )
        service = (
            MessagingService.builder()
            .from_properties(service_properties(self.config))
            .with_reconnection_retry_strategy(retry)
            .build()
        )
        listener = _ServiceListener(self.events)
        try:
            service.connect()
        except PubSubPlusClientError as e:
            raise TransportFatal(f"Could not connect: {e}") from e
        service.add_service_interruption_listener(listener)
        service.add_reconnection_attempt_listener(listener)
        service.add_reconnection_listener(listener)
        self._service = service

    def disconnect(self) -> None:
        if self._service is not None:
            self._service.disconnect()

    def _require_service(self) -> MessagingService:
        if self._service is None:
            raise TransportFatal("transport is not connected")
        return self._service

    def create_publisher(self, back_pressure_slots: int = 1) -> SolacePublisher:
        return SolacePublisher(self._require_service(), self.events, back_pressure_slots)

    def create_receiver(self, options: FlowOptions) -> SolaceReceiver:
        service = self._require_service()
        if options.non_exclusive:
            queue = Queue.durable_non_exclusive_queue(options.queue_name)
        else:
            queue = Queue.durable_exclusive_queue(options.queue_name)

        tx_service = None
        if options.transacted:
            tx_service = service.create_transactional_service_builder().build()
            tx_service.connect()
            builder = tx_service.create_transactional_message_receiver_builder()
        else:
            builder = service.create_persistent_message_receiver_builder()
            if not options.client_acked:
                builder = builder.with_message_auto_acknowledgement()

        receiver = builder.build(queue)
        try:
            receiver.start()
        except PubSubPlusClientError as e:
            if tx_service is not None:
                tx_service.disconnect()
            if _is_not_supported(e):
                raise OperationNotSupported(str(e)) from e
            raise BindError(str(e)) from e
        return SolaceReceiver(receiver, options, self.events, tx_service)
