"""Consumer drivers: pull, transacted pull and push (listener) flows."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from pqdemo.drivers.base import Driver
from pqdemo.drivers.stats import RECEIVED
from pqdemo.errors import CommitFailed, TransportFatal
from pqdemo.models.config import DemoConfig
from pqdemo.models.message import AckMode, InboundMessage
from pqdemo.transport.base import FlowOptions, MessageReceiver, Transport

logger = logging.getLogger(__name__)

RECEIVE_TIMEOUT_MS = 200
SETTLE_SECONDS = 1.0

DEFAULT_CONSUMER_RATE = 2
DEFAULT_TRANSACTED_RATE = 10


class ConsumerDriver(Driver):
    """Pulls one message per paced iteration from an exclusive queue flow."""

    sample_name = "PQConsumer"
    direction = RECEIVED
    default_rate = DEFAULT_CONSUMER_RATE

    def __init__(
        self,
        config: DemoConfig,
        transport: Transport,
        *,
        settle_seconds: float = SETTLE_SECONDS,
        **kwargs: Any,
    ):
        super().__init__(config, transport, **kwargs)
        self.settle_seconds = settle_seconds
        self.receiver: MessageReceiver | None = None

    def flow_options(self) -> FlowOptions:
        return FlowOptions(
            queue_name=self.config.queue_name,
            ack_mode=self.config.ack_mode,
            window_size=self.config.window_size,
        )

    def _require_receiver(self) -> MessageReceiver:
        if self.receiver is None:
            raise TransportFatal("receiver is not bound")
        return self.receiver

    async def setup(self) -> None:
        self.console.print(
            f"Attempting to bind to queue '{self.config.queue_name}' on the broker.",
            highlight=False,
        )
        self.receiver = await self.call(self.transport.create_receiver, self.flow_options())
        await self.call(self.receiver.start)
        logger.info(
            "Ready to read messages from broker msgvpn='%s' queueName='%s'",
            self.config.vpn_name,
            self.config.queue_name,
        )

    def process(self, message: InboundMessage) -> None:
        logger.debug(
            "Received key=%s redelivered=%s destination=%s",
            message.partition_key,
            message.redelivered,
            message.destination,
        )

    async def handle(self, message: InboundMessage) -> None:
        self.counters.record_received(message.redelivered)
        self.process(message)
        # Acknowledgment only once processing is done
        if self.flow_options().client_acked:
            await self.call(self._require_receiver().ack, message)
        self._check_limit(self.counters.total_received)

    async def main_loop(self) -> None:
        receiver = self._require_receiver()
        while not self.should_stop:
            start = self.pacer.mark()
            try:
                message = await self.call(receiver.receive, RECEIVE_TIMEOUT_MS)
                if message is not None:
                    await self.handle(message)
            except TransportFatal as e:
                logger.error("### Flow on queue '%s' failed: %s", self.config.queue_name, e)
                self.request_stop(f"flow failure: {e}")
            except Exception as e:
                logger.warning("### Caught while consuming: %s", e, exc_info=True)
                self.request_stop(f"consume failed: {e}")
            await self.pacer.pace_iteration(start)
            self.sampler.maybe_emit()

    async def teardown(self) -> None:
        if self.receiver is None or self.receiver.closed:
            return
        await self.call(self.receiver.stop)
        if self.settle_seconds > 0:
            await asyncio.sleep(self.settle_seconds)
        await self.call(self.receiver.close)


class TransactedConsumerDriver(ConsumerDriver):
    """Consumes inside broker transactions, committing every batch."""

    sample_name = "PQTransactedConsumer"
    default_rate = DEFAULT_TRANSACTED_RATE

    def __init__(self, config: DemoConfig, transport: Transport, **kwargs: Any):
        super().__init__(config, transport, **kwargs)
        self.tx_count = 0

    def flow_options(self) -> FlowOptions:
        return FlowOptions(
            queue_name=self.config.queue_name,
            ack_mode=AckMode.CLIENT,
            window_size=self.config.window_size,
            transacted=True,
            non_exclusive=True,
        )

    async def handle(self, message: InboundMessage) -> None:
        self.counters.record_received(message.redelivered)
        self.process(message)
        self.tx_count += 1
        if self.tx_count > self.config.tx_batch_size:
            await self.commit()
        self._check_limit(self.counters.total_received)

    async def commit(self) -> None:
        receiver = self._require_receiver()
        try:
            await self.call(receiver.commit)
        except CommitFailed as e:
            self.counters.record_commit_failure()
            logger.error("Commit of %d message(s) failed: %s", self.tx_count, e)
        else:
            self.counters.record_commit()
            logger.debug("Committed %d message(s)", self.tx_count)
        finally:
            # Either committed or rolled back by the broker
            self.tx_count = 0


class ListenerConsumerDriver(ConsumerDriver):
    """Messages are pushed by the transport; the main loop only reports."""

    sample_name = "PQListenerConsumer"

    def flow_options(self) -> FlowOptions:
        return dataclasses.replace(super().flow_options(), push=True)

    async def on_message(self, message: InboundMessage) -> None:
        if self.should_stop:
            # Left unacknowledged; the broker redelivers it
            return
        start = self.pacer.mark()
        await self.handle(message)
        await self.pacer.pace_iteration(start)

    async def on_flow_failure(self, error: Exception, fatal: bool) -> None:
        if not fatal and self.receiver is not None:
            await self.call(self.receiver.close)
        await super().on_flow_failure(error, fatal)

    async def main_loop(self) -> None:
        tick = min(0.1, self.sampler.interval)
        while not self.should_stop:
            await asyncio.sleep(tick)
            self.sampler.maybe_emit()
