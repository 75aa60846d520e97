"""In-process partitioned broker and the transport that talks to it.

Used by the test-suite and by ``--transport memory`` dry runs. Faults can be
injected on the transport: NACK every Nth submission, delay every
acknowledgment, fail the next N commits, or refuse binds to a queue.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
import zlib
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pqdemo.errors import (
    AckTimeout,
    BindError,
    CommitFailed,
    OperationNotSupported,
    PublishNack,
    SubmitFailure,
    TransportFatal,
)
from pqdemo.models.config import DEFAULT_TOPIC_PREFIX
from pqdemo.models.message import InboundMessage, OutboundMessage, PublishReceipt
from pqdemo.transport.base import FlowOptions, MessagePublisher, MessageReceiver, Transport
from pqdemo.transport.events import (
    FlowEvent,
    MessageDelivered,
    ReceiptEvent,
    ReconnectAttempt,
    Reconnected,
    ServiceInterrupted,
)

logger = logging.getLogger(__name__)


def topic_matches(subscription: str, topic: str) -> bool:
    """Match a topic against a subscription with ``*`` and trailing ``>`` wildcards."""
    sub_levels = subscription.split("/")
    topic_levels = topic.split("/")
    for i, level in enumerate(sub_levels):
        if level == ">" and i == len(sub_levels) - 1:
            return len(topic_levels) > i
        if i >= len(topic_levels):
            return False
        if level == "*":
            continue
        if level.endswith("*") and topic_levels[i].startswith(level[:-1]):
            continue
        if level != topic_levels[i]:
            return False
    return len(sub_levels) == len(topic_levels)


@dataclass
class SpooledMessage:
    message_id: int
    payload: bytes
    partition_key: str | None = None
    destination: str | None = None
    redelivered: bool = False


class BrokerQueue:
    """A queue sharded into partitions by partition key; FIFO within a partition."""

    def __init__(
        self,
        name: str,
        subscriptions: Iterable[str],
        partition_count: int,
        bindable: bool = True,
    ):
        self.name = name
        self.subscriptions = list(subscriptions)
        self.partitions: list[deque[SpooledMessage]] = [deque() for _ in range(partition_count)]
        self.bindable = bindable
        self.unacked: dict[int, SpooledMessage] = {}
        self.acked = 0
        self._next_partition = 0

    def partition_for(self, key: str | None) -> int:
        if not key:
            return 0
        return zlib.crc32(key.encode()) % len(self.partitions)

    def matches(self, topic: str) -> bool:
        return any(topic_matches(sub, topic) for sub in self.subscriptions)

    def enqueue(self, spooled: SpooledMessage) -> None:
        self.partitions[self.partition_for(spooled.partition_key)].append(spooled)

    def take(self) -> SpooledMessage | None:
        count = len(self.partitions)
        for offset in range(count):
            idx = (self._next_partition + offset) % count
            if self.partitions[idx]:
                self._next_partition = (idx + 1) % count
                spooled = self.partitions[idx].popleft()
                self.unacked[spooled.message_id] = spooled
                return spooled
        return None

    def ack(self, message_id: int) -> None:
        if self.unacked.pop(message_id, None) is not None:
            self.acked += 1

    def release(self, message_ids: Iterable[int]) -> int:
        """Put unacknowledged messages back at the head of their partitions."""
        released = [self.unacked.pop(i) for i in message_ids if i in self.unacked]
        for spooled in reversed(released):
            spooled.redelivered = True
            self.partitions[self.partition_for(spooled.partition_key)].appendleft(spooled)
        return len(released)

    @property
    def depth(self) -> int:
        return sum(len(p) for p in self.partitions)


class InMemoryBroker:
    """Routes published messages into subscribed queues."""

    def __init__(self, partition_count: int = 4):
        self.partition_count = partition_count
        self._cond = threading.Condition()
        self._queues: dict[str, BrokerQueue] = {}
        self._ids = itertools.count(1)

    def provision_queue(
        self,
        name: str,
        subscriptions: Iterable[str] = (f"{DEFAULT_TOPIC_PREFIX}/>",),
        partition_count: int | None = None,
        bindable: bool = True,
    ) -> BrokerQueue:
        with self._cond:
            q = BrokerQueue(name, subscriptions, partition_count or self.partition_count, bindable)
            self._queues[name] = q
            return q

    def queue(self, name: str) -> BrokerQueue | None:
        with self._cond:
            return self._queues.get(name)

    def spool(
        self,
        topic: str,
        payload: bytes,
        partition_key: str | None = None,
        redelivered: bool = False,
    ) -> int:
        """Store a copy in every matching queue; returns how many matched."""
        with self._cond:
            matched = 0
            for q in self._queues.values():
                if q.matches(topic):
                    q.enqueue(
                        SpooledMessage(next(self._ids), payload, partition_key, topic, redelivered)
                    )
                    matched += 1
            if matched:
                self._cond.notify_all()
            return matched

    def inject(
        self,
        queue_name: str,
        payload: bytes = b"",
        partition_key: str | None = None,
        redelivered: bool = False,
    ) -> None:
        with self._cond:
            self._queues[queue_name].enqueue(
                SpooledMessage(next(self._ids), payload, partition_key, None, redelivered)
            )
            self._cond.notify_all()

    def take(
        self, queue_name: str, timeout: float, cancelled: Callable[[], bool]
    ) -> SpooledMessage | None:
        deadline = time.monotonic() + timeout
        with self._cond:
            q = self._queues[queue_name]
            while not cancelled():
                spooled = q.take()
                if spooled is not None:
                    return spooled
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            return None

    def ack(self, queue_name: str, message_ids: Iterable[int]) -> None:
        with self._cond:
            q = self._queues[queue_name]
            for message_id in message_ids:
                q.ack(message_id)

    def release(self, queue_name: str, message_ids: Iterable[int]) -> int:
        with self._cond:
            released = self._queues[queue_name].release(message_ids)
            if released:
                self._cond.notify_all()
            return released

    def notify(self) -> None:
        with self._cond:
            self._cond.notify_all()


@dataclass
class _Submission:
    message: OutboundMessage
    topic: str
    user_context: Any
    index: int
    done: threading.Event | None = None
    error: Exception | None = None


class MemoryPublisher(MessagePublisher):
    """Persistent publisher with a bounded submission window.

    A worker thread settles one submission at a time. Each submission holds a
    slot until it is settled, and ``publish`` blocks the caller while all slots
    are taken.
    """

    def __init__(self, transport: MemoryTransport, slots: int = 1):
        self._transport = transport
        self._pending: queue.Queue[_Submission] = queue.Queue()
        self._slots = threading.Semaphore(max(1, slots))
        self._lock = threading.Lock()
        self._submitted = 0
        self._accepting = False
        self._closed = False
        self._abandoned = False
        self._worker: threading.Thread | None = None

    def start(self) -> None:
        if self._worker is not None:
            return
        self._accepting = True
        self._worker = threading.Thread(target=self._run, name="memory-publisher", daemon=True)
        self._worker.start()

    def _submit(
        self,
        message: OutboundMessage,
        topic: str,
        user_context: Any,
        done: threading.Event | None,
    ) -> _Submission:
        if not self._accepting:
            raise SubmitFailure("publisher is not running")
        while not self._slots.acquire(timeout=0.05):
            if not self._accepting:
                raise SubmitFailure("publisher terminated while waiting for a slot")
        with self._lock:
            self._submitted += 1
            index = self._submitted
        submission = _Submission(message, topic, user_context, index, done)
        self._pending.put(submission)
        return submission

    def publish(self, message: OutboundMessage, topic: str, user_context: Any = None) -> None:
        self._submit(message, topic, user_context, None)

    def publish_await_acknowledgement(
        self, message: OutboundMessage, topic: str, timeout_ms: int
    ) -> None:
        done = threading.Event()
        submission = self._submit(message, topic, None, done)
        if not done.wait(timeout_ms / 1000):
            raise AckTimeout(f"No acknowledgment for {message} within {timeout_ms} ms")
        if submission.error is not None:
            raise PublishNack(str(submission.error)) from submission.error

    def _run(self) -> None:
        while not self._abandoned:
            try:
                submission = self._pending.get(timeout=0.05)
            except queue.Empty:
                if self._closed:
                    break
                continue
            try:
                self._settle(submission)
            finally:
                self._slots.release()

    def _settle(self, submission: _Submission) -> None:
        transport = self._transport
        if transport.ack_delay_ms > 0:
            time.sleep(transport.ack_delay_ms / 1000)

        error: Exception | None = None
        if transport.nack_every and submission.index % transport.nack_every == 0:
            error = PublishNack(f"Simulated NACK for submission {submission.index}")
        else:
            transport.broker.spool(
                submission.topic,
                submission.message.payload,
                submission.message.partition_key,
            )

        if submission.done is not None:
            submission.error = error
            submission.done.set()
        else:
            receipt = PublishReceipt(submission.message, submission.user_context, error)
            transport.events.put(ReceiptEvent(receipt))

    def terminate(self, grace_period_ms: int) -> None:
        self._accepting = False
        self._closed = True
        self._transport.history.append(("terminate", grace_period_ms))
        if self._worker is None:
            return
        self._worker.join(grace_period_ms / 1000)
        if self._worker.is_alive():
            self._abandoned = True
            logger.warning(
                "Publisher terminated with %d submission(s) still in flight",
                self._pending.qsize() + 1,
            )


class MemoryReceiver(MessageReceiver):
    def __init__(self, transport: MemoryTransport, queue_name: str, options: FlowOptions):
        self._transport = transport
        self._broker = transport.broker
        self.queue_name = queue_name
        self.options = options
        self._lock = threading.Lock()
        self._running = False
        self._closed = False
        self._uncommitted: list[int] = []
        self._unacked: set[int] = set()
        self._dispatcher: threading.Thread | None = None
        self.commits = 0
        self.rollbacks = 0

    def _stopped(self) -> bool:
        return not self._running or self._closed

    def start(self) -> None:
        if self._closed:
            raise TransportFatal("receiver is closed")
        self._running = True
        self._transport.events.put(
            FlowEvent(f"Flow active on queue '{self.queue_name}'", active=True)
        )
        if self.options.push and self._dispatcher is None:
            self._dispatcher = threading.Thread(
                target=self._dispatch, name="memory-flow", daemon=True
            )
            self._dispatcher.start()

    def _deliver(self, spooled: SpooledMessage) -> InboundMessage:
        with self._lock:
            if self.options.transacted:
                self._uncommitted.append(spooled.message_id)
            elif self.options.client_acked:
                self._unacked.add(spooled.message_id)
        if not self.options.transacted and not self.options.client_acked:
            self._broker.ack(self.queue_name, [spooled.message_id])
        return InboundMessage(
            payload=spooled.payload,
            redelivered=spooled.redelivered,
            partition_key=spooled.partition_key,
            destination=spooled.destination,
            handle=spooled.message_id,
        )

    def receive(self, timeout_ms: int) -> InboundMessage | None:
        if self.options.push:
            raise OperationNotSupported("push flows deliver messages as events")
        if self._stopped():
            time.sleep(timeout_ms / 1000)
            return None
        spooled = self._broker.take(self.queue_name, timeout_ms / 1000, self._stopped)
        return None if spooled is None else self._deliver(spooled)

    def _dispatch(self) -> None:
        events = self._transport.events
        while not self._closed:
            if not self._running or events.pending() >= self.options.window_size:
                time.sleep(0.01)
                continue
            spooled = self._broker.take(self.queue_name, 0.1, self._stopped)
            if spooled is not None:
                events.put(MessageDelivered(self._deliver(spooled)))

    def ack(self, message: InboundMessage) -> None:
        with self._lock:
            if message.handle not in self._unacked:
                return
            self._unacked.discard(message.handle)
        self._broker.ack(self.queue_name, [message.handle])

    def commit(self) -> None:
        if not self.options.transacted:
            super().commit()
        with self._lock:
            ids, self._uncommitted = self._uncommitted, []
        if self._transport.fail_commits > 0:
            self._transport.fail_commits -= 1
            self._broker.release(self.queue_name, ids)
            self.rollbacks += 1
            raise CommitFailed(f"Simulated commit failure; {len(ids)} message(s) rolled back")
        self._broker.ack(self.queue_name, ids)
        self.commits += 1

    @property
    def closed(self) -> bool:
        return self._closed

    def stop(self) -> None:
        self._running = False
        self._broker.notify()

    def close(self) -> None:
        if self._closed:
            return
        self.stop()
        self._closed = True
        if self._dispatcher is not None:
            self._dispatcher.join(1.0)
        with self._lock:
            ids = [*self._uncommitted, *self._unacked]
            self._uncommitted, self._unacked = [], set()
        self._broker.release(self.queue_name, ids)
        self._transport.history.append(("close", self.queue_name))


class MemoryTransport(Transport):
    name = "memory"

    def __init__(
        self,
        broker: InMemoryBroker | None = None,
        *,
        nack_every: int = 0,
        ack_delay_ms: int = 0,
        fail_commits: int = 0,
    ):
        super().__init__()
        self.broker = broker or InMemoryBroker()
        self.nack_every = nack_every
        self.ack_delay_ms = ack_delay_ms
        self.fail_commits = fail_commits
        self.history: list[tuple] = []
        self._connected = False
        self._publishers: list[MemoryPublisher] = []
        self._receivers: list[MemoryReceiver] = []

    def connect(self) -> None:
        self._connected = True
        self.history.append(("connect",))

    def disconnect(self) -> None:
        for publisher in self._publishers:
            if not publisher._closed:
                publisher.terminate(0)
        for receiver in self._receivers:
            receiver.close()
        self._connected = False
        self.history.append(("disconnect",))

    def interrupt(self, cause: str = "simulated interruption") -> None:
        """Emit the lifecycle events of a dropped-then-restored session."""
        self.events.put(ServiceInterrupted(cause))
        self.events.put(ReconnectAttempt(cause))
        self.events.put(Reconnected(cause))

    def _require_connected(self) -> None:
        if not self._connected:
            raise TransportFatal("transport is not connected")

    def create_publisher(self, back_pressure_slots: int = 1) -> MemoryPublisher:
        self._require_connected()
        publisher = MemoryPublisher(self, back_pressure_slots)
        self._publishers.append(publisher)
        return publisher

    def create_receiver(self, options: FlowOptions) -> MemoryReceiver:
        self._require_connected()
        q = self.broker.queue(options.queue_name)
        if q is None:
            raise BindError(f"Unknown queue '{options.queue_name}'")
        if not q.bindable:
            raise OperationNotSupported(f"Bind to queue '{options.queue_name}' is not permitted")
        receiver = MemoryReceiver(self, options.queue_name, options)
        self._receivers.append(receiver)
        self.history.append(("bind", options.queue_name))
        return receiver
