import asyncio
import logging
import os
import random
import re

import pytest

from pqdemo.drivers.lifecycle import DriverState
from pqdemo.drivers.publisher import BlockingPublisherDriver, PublisherDriver
from pqdemo.errors import SubmitFailure, TransportFatal
from pqdemo.models.config import DEFAULT_QUEUE_NAME, Role
from pqdemo.models.message import OutboundMessage, PublishReceipt
from pqdemo.transport.events import ReceiptEvent, ServiceInterrupted
from pqdemo.transport.memory import MemoryPublisher, MemoryTransport

TOPIC_RE = re.compile(r"^pqdemo/(NA|UK|EU|APAC)/\d+$")


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def publisher_config(make_config):
    return make_config(Role.PUBLISHER, rate=1000)


def make_driver(cls, config, transport, output, **kwargs):
    kwargs.setdefault("drain_seconds", 0)
    return cls(
        config,
        transport,
        console=output.console,
        handle_signals=False,
        rng=random.Random(42),
        **kwargs,
    )


class TestPublisherDriver:
    async def test_publishes_keyed_messages(self, publisher_config, transport, broker, output):
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        result = await driver.execute(message_limit=50)

        assert result.messages_published == 50
        assert result.nacks == 0
        assert result.final_state is DriverState.CLOSED
        assert result.shutdown_reason == "message limit reached"

        q = broker.queue(DEFAULT_QUEUE_NAME)
        assert q.depth == 50
        spooled = [m for partition in q.partitions for m in partition]
        assert all(TOPIC_RE.match(m.destination) for m in spooled)
        assert {m.partition_key for m in spooled} <= {f"{i:05d}" for i in range(1, 21)}
        assert sorted(int(m.destination.rsplit("/", 1)[1]) for m in spooled) == list(range(50))

    async def test_payload_letter_follows_sequence(self, publisher_config, transport, broker, output):
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        await driver.execute(message_limit=30)

        q = broker.queue(DEFAULT_QUEUE_NAME)
        for m in (m for partition in q.partitions for m in partition):
            seq = int(m.destination.rsplit("/", 1)[1])
            assert m.payload == bytes([ord("A") + seq % 26]) * 256

    async def test_nack_every_seventh(self, publisher_config, broker, output, caplog):
        caplog.set_level(logging.WARNING, logger="pqdemo.drivers.publisher")
        transport = MemoryTransport(broker, nack_every=7)
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        result = await driver.execute(message_limit=100)

        nack_warnings = [r for r in caplog.records if r.getMessage().startswith("NACK for Message")]
        assert result.messages_published == 100
        assert result.nacks == 14
        assert len(nack_warnings) == 14
        assert all(r.levelno == logging.WARNING for r in nack_warnings)
        assert result.shutdown_reason == "message limit reached"
        assert broker.queue(DEFAULT_QUEUE_NAME).depth == 86

    async def test_graceful_shutdown_order(self, publisher_config, transport, output):
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        await driver.execute(message_limit=10)

        assert transport.history == [("connect",), ("terminate", 1500), ("disconnect",)]
        lines = output.lines()
        assert lines[0].endswith("connected, and running. Press [ENTER] to quit.")
        assert "Publishing to topic 'pqdemo/>'" in lines[1]
        assert lines[-1] == "Main thread quitting."

    async def test_stdin_line_stops_the_loop(self, publisher_config, transport, output):
        read_fd, write_fd = os.pipe()
        stdin = os.fdopen(read_fd, "r")
        driver = make_driver(PublisherDriver, publisher_config, transport, output, stdin=stdin)
        try:
            task = asyncio.create_task(driver.execute())
            await wait_until(lambda: driver.counters.total_sent >= 20)
            os.write(write_fd, b"\n")
            result = await asyncio.wait_for(task, timeout=5)
        finally:
            os.close(write_fd)
            stdin.close()

        assert result.shutdown_reason == "operator input"
        assert transport.history[-2:] == [("terminate", 1500), ("disconnect",)]

    async def test_stdin_eof_keeps_running(self, publisher_config, transport, output):
        read_fd, write_fd = os.pipe()
        stdin = os.fdopen(read_fd, "r")
        os.close(write_fd)
        driver = make_driver(PublisherDriver, publisher_config, transport, output, stdin=stdin)
        try:
            task = asyncio.create_task(driver.execute())
            await wait_until(lambda: driver.counters.total_sent >= 30)
            assert not driver.should_stop
            driver.request_stop("test")
            result = await asyncio.wait_for(task, timeout=5)
        finally:
            stdin.close()

        assert result.shutdown_reason == "test"

    async def test_stats_printed_every_interval(self, make_config, transport, output):
        config = make_config(Role.PUBLISHER, rate=100)
        driver = make_driver(PublisherDriver, config, transport, output, stats_interval=0.1)

        result = await driver.execute(duration_seconds=0.55)

        stats = [line for line in output.lines() if "PQPublisher Published msgs/s:" in line]
        assert 4 <= len(stats) <= 6
        assert result.shutdown_reason == "duration reached"

    async def test_submit_failure_sets_latch(
        self, publisher_config, transport, output, monkeypatch, caplog
    ):
        def refuse(self, message, topic, user_context=None):
            raise SubmitFailure("session is down")

        monkeypatch.setattr(MemoryPublisher, "publish", refuse)
        caplog.set_level(logging.WARNING, logger="pqdemo.drivers.publisher")
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        result = await driver.execute(message_limit=10)

        assert result.messages_published == 0
        assert result.shutdown_reason == "publish failed: session is down"
        assert any("### Caught while trying to publish" in r.getMessage() for r in caplog.records)

    @pytest.mark.parametrize("cls", [PublisherDriver, BlockingPublisherDriver])
    async def test_submit_before_start_is_fatal(self, cls, publisher_config, transport, output):
        driver = make_driver(cls, publisher_config, transport, output)
        message, topic = driver.next_message()

        with pytest.raises(TransportFatal):
            await driver.submit(message, topic)


class TestReceiptHandling:
    def test_nack_prefers_user_context(self, publisher_config, transport, output, caplog):
        caplog.set_level(logging.DEBUG, logger="pqdemo.drivers.publisher")
        driver = make_driver(PublisherDriver, publisher_config, transport, output)
        message = OutboundMessage.with_partition_key(b"A", "00001", 3)

        driver.on_receipt(PublishReceipt(message, "seq=3", RuntimeError("rejected")))
        driver.on_receipt(PublishReceipt(message, None, RuntimeError("rejected")))
        driver.on_receipt(PublishReceipt(message))

        messages = [r.getMessage() for r in caplog.records]
        assert messages == [
            "NACK for Message seq=3 - rejected",
            f"NACK for Message {message} - rejected",
            f"ACK for Message {message}",
        ]
        assert driver.counters.nacks == 2

    async def test_handler_errors_never_escape(
        self, publisher_config, transport, output, monkeypatch, caplog
    ):
        driver = make_driver(PublisherDriver, publisher_config, transport, output)

        def explode(receipt):
            raise RuntimeError("boom")

        monkeypatch.setattr(driver, "on_receipt", explode)
        message = OutboundMessage.with_partition_key(b"A", "00001")

        await driver.dispatch(ReceiptEvent(PublishReceipt(message)))
        await driver.dispatch(ServiceInterrupted("link down"))

        messages = [r.getMessage() for r in caplog.records]
        assert "Error while handling ReceiptEvent" in messages
        assert "### SERVICE INTERRUPTION: link down" in messages


class TestBlockingPublisherDriver:
    async def test_publishes_after_each_ack(self, publisher_config, transport, broker, output):
        driver = make_driver(BlockingPublisherDriver, publisher_config, transport, output)

        result = await driver.execute(message_limit=25)

        assert result.messages_published == 25
        assert broker.queue(DEFAULT_QUEUE_NAME).depth == 25
        assert transport.history[-2:] == [("terminate", 1500), ("disconnect",)]

    async def test_timeouts_hold_the_counter_until_recovery(
        self, publisher_config, broker, output, caplog
    ):
        caplog.set_level(logging.WARNING, logger="pqdemo.drivers.publisher")
        transport = MemoryTransport(broker, ack_delay_ms=300)
        driver = make_driver(
            BlockingPublisherDriver, publisher_config, transport, output, ack_timeout_ms=50
        )

        task = asyncio.create_task(driver.execute())
        await wait_until(lambda: driver.counters.ack_timeouts >= 2)
        assert driver.counters.total_sent == 0

        transport.ack_delay_ms = 0
        await wait_until(lambda: driver.counters.total_sent >= 3)
        driver.request_stop("test")
        result = await asyncio.wait_for(task, timeout=5)

        timeouts = [r for r in caplog.records if "Timed out waiting for ACK" in r.getMessage()]
        assert len(timeouts) == result.ack_timeouts >= 2
        assert result.messages_published >= 3

    async def test_nacks_are_not_counted_as_sent(self, publisher_config, broker, output):
        transport = MemoryTransport(broker, nack_every=2)
        driver = make_driver(BlockingPublisherDriver, publisher_config, transport, output)

        result = await driver.execute(message_limit=10)

        assert result.messages_published == 10
        assert result.nacks == 9
