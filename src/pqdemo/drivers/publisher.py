"""Publisher drivers: paced persistent publishing with partition keys."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from pqdemo.drivers.base import Driver
from pqdemo.drivers.stats import PUBLISHED
from pqdemo.errors import AckTimeout, PublishNack, TransportFatal
from pqdemo.generators.key import KeyTopicGenerator
from pqdemo.generators.payload import PayloadBuffer
from pqdemo.models.config import DemoConfig
from pqdemo.models.message import OutboundMessage, PublishReceipt
from pqdemo.transport.base import MessagePublisher, Transport

logger = logging.getLogger(__name__)

BACK_PRESSURE_SLOTS = 1
TERMINATE_GRACE_MS = 1500
DRAIN_SECONDS = 1.5
ACK_TIMEOUT_MS = 2000


class PublisherDriver(Driver):
    """Non-blocking publisher; broker receipts are correlated as events."""

    sample_name = "PQPublisher"
    direction = PUBLISHED
    periodic_stats = True

    def __init__(
        self,
        config: DemoConfig,
        transport: Transport,
        *,
        rng: random.Random | None = None,
        drain_seconds: float = DRAIN_SECONDS,
        **kwargs: Any,
    ):
        super().__init__(config, transport, **kwargs)
        self.generator = KeyTopicGenerator.from_config(config, rng)
        self.payload = PayloadBuffer()
        self.drain_seconds = drain_seconds
        self.publisher: MessagePublisher | None = None

    @property
    def sequence(self) -> int:
        return self.counters.total_sent

    def _require_publisher(self) -> MessagePublisher:
        if self.publisher is None:
            raise TransportFatal("publisher is not started")
        return self.publisher

    async def setup(self) -> None:
        self.publisher = await self.call(self.transport.create_publisher, BACK_PRESSURE_SLOTS)
        await self.call(self.publisher.start)

    def print_banner(self) -> None:
        super().print_banner()
        self.console.print(
            f"Publishing to topic '{self.generator.topics.pattern}', "
            "please ensure queue has matching subscription.",
            highlight=False,
        )

    def on_receipt(self, receipt: PublishReceipt) -> None:
        if receipt.is_success:
            logger.debug("ACK for Message %s", receipt.user_context or receipt.message)
            return
        self.counters.record_nack()
        logger.warning(
            "NACK for Message %s - %s", receipt.user_context or receipt.message, receipt.error
        )

    def next_message(self) -> tuple[OutboundMessage, str]:
        seq = self.sequence
        topic, key = self.generator.next(seq)
        message = OutboundMessage.with_partition_key(self.payload.fill(seq), key, seq)
        return message, topic

    async def submit(self, message: OutboundMessage, topic: str) -> bool:
        """Hand the message to the transport; True when it counts as sent."""
        context = f"seq={message.sequence} topic={topic}"
        await self.call(self._require_publisher().publish, message, topic, context)
        return True

    async def main_loop(self) -> None:
        while not self.should_stop:
            start = self.pacer.mark()
            try:
                message, topic = self.next_message()
                if await self.submit(message, topic):
                    self.counters.record_sent()
                    logger.debug(
                        "OrderId='%s' sequence='%d' location='%s' topic='%s'",
                        message.partition_key,
                        self.sequence,
                        self.generator.last_location,
                        topic,
                    )
                    self._check_limit(self.sequence)
            except Exception as e:
                logger.warning("### Caught while trying to publish: %s", e, exc_info=True)
                self.request_stop(f"publish failed: {e}")
            await self.pacer.pace_iteration(start)

    async def teardown(self) -> None:
        if self.publisher is None:
            return
        await self.call(self.publisher.terminate, TERMINATE_GRACE_MS)
        # Late receipts are still drained by the event task
        if self.drain_seconds > 0:
            await asyncio.sleep(self.drain_seconds)


class BlockingPublisherDriver(PublisherDriver):
    """Publisher that waits for each acknowledgment before moving on."""

    sample_name = "PQPublisherBlocking"

    def __init__(
        self,
        config: DemoConfig,
        transport: Transport,
        *,
        ack_timeout_ms: int = ACK_TIMEOUT_MS,
        drain_seconds: float = 0,
        **kwargs: Any,
    ):
        super().__init__(config, transport, drain_seconds=drain_seconds, **kwargs)
        self.ack_timeout_ms = ack_timeout_ms

    async def submit(self, message: OutboundMessage, topic: str) -> bool:
        publisher = self._require_publisher()
        try:
            await self.call(
                publisher.publish_await_acknowledgement, message, topic, self.ack_timeout_ms
            )
        except AckTimeout as e:
            self.counters.record_ack_timeout()
            logger.warning("Timed out waiting for ACK of %s - %s", message, e)
            return False
        except PublishNack as e:
            self.counters.record_nack()
            logger.warning("NACK for Message %s - %s", message, e)
            return False
        except asyncio.CancelledError:
            logger.info("Got interrupted, probably shutting down")
            self.request_stop("interrupted")
            raise
        return True
