import pytest

pytest.importorskip("solace.messaging")

from pqdemo.config import build_config  # noqa: E402
from pqdemo.drivers import PublisherDriver, TransactedConsumerDriver  # noqa: E402
from pqdemo.errors import TransportFatal  # noqa: E402
from pqdemo.models.config import Role  # noqa: E402
from pqdemo.transport.base import FlowOptions  # noqa: E402
from pqdemo.transport.solace import SolaceTransport  # noqa: E402

pytestmark = pytest.mark.integration


async def test_published_messages_are_consumed_in_transactions(
    connection_properties, partitioned_queue
):
    pub_config = build_config(Role.PUBLISHER, connection_properties, rate_arg="200")
    publisher = PublisherDriver(
        pub_config, SolaceTransport(pub_config), handle_signals=False, drain_seconds=0.5
    )
    published = await publisher.execute(message_limit=20)

    assert published.messages_published == 20
    assert published.nacks == 0

    props = {
        **connection_properties,
        "queue.name": partitioned_queue,
        "transacted.msg.count": "8",
        "consume.msg.rate": "200",
    }
    con_config = build_config(Role.CONSUMER, props)
    consumer = TransactedConsumerDriver(
        con_config, SolaceTransport(con_config), handle_signals=False, settle_seconds=0
    )
    consumed = await consumer.execute(duration_seconds=20, message_limit=18)

    assert consumed.messages_received == 18
    assert consumed.commits == 2
    assert consumed.commit_failures == 0


async def test_bind_to_missing_queue_fails(connection_properties, solace_container):
    props = {**connection_properties, "queue.name": "no-such-queue"}
    config = build_config(Role.CONSUMER, props)
    consumer = TransactedConsumerDriver(
        config, SolaceTransport(config), handle_signals=False, settle_seconds=0
    )

    with pytest.raises(TransportFatal):
        await consumer.execute(duration_seconds=5)


def test_receiver_close_is_idempotent(connection_properties, partitioned_queue):
    props = {**connection_properties, "queue.name": partitioned_queue}
    config = build_config(Role.CONSUMER, props)
    transport = SolaceTransport(config)
    transport.connect()
    try:
        options = FlowOptions(queue_name=partitioned_queue, non_exclusive=True, push=True)
        receiver = transport.create_receiver(options)
        receiver.start()

        receiver.close()
        receiver.stop()
        receiver.close()

        assert receiver.closed
    finally:
        transport.disconnect()
