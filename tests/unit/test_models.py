import pytest

from pqdemo.models.config import DemoConfig, Role
from pqdemo.models.message import QUEUE_PARTITION_KEY, OutboundMessage, PublishReceipt


class TestOutboundMessage:
    def test_carries_exactly_one_partition_key(self):
        message = OutboundMessage.with_partition_key(b"A", "00003", sequence=4)
        assert message.properties == {QUEUE_PARTITION_KEY: "00003"}
        assert message.partition_key == "00003"
        assert "seq=4" in str(message)

    @pytest.mark.parametrize(
        "properties",
        [
            {},
            {QUEUE_PARTITION_KEY: ""},
            {QUEUE_PARTITION_KEY: "1", "extra": "x"},
        ],
    )
    def test_rejects_bad_properties(self, properties):
        with pytest.raises(ValueError):
            OutboundMessage(payload=b"A", properties=properties)

    def test_properties_cannot_change_after_validation(self):
        source = {QUEUE_PARTITION_KEY: "00001"}
        message = OutboundMessage(payload=b"A", properties=source)
        source["extra"] = "x"

        with pytest.raises(TypeError):
            message.properties["extra"] = "x"  # type: ignore[index]
        assert dict(message.properties) == {QUEUE_PARTITION_KEY: "00001"}


def test_receipt_success():
    message = OutboundMessage.with_partition_key(b"A", "1")
    assert PublishReceipt(message).is_success
    assert not PublishReceipt(message, error=RuntimeError("nack")).is_success


class TestDemoConfig:
    def test_transport_properties_are_read_only(self):
        config = DemoConfig(role=Role.CONSUMER, transport_properties={"host": "h"})
        with pytest.raises(TypeError):
            config.transport_properties["host"] = "other"  # type: ignore[index]

    @pytest.mark.parametrize("field,value", [("rate", 0), ("rate", 1001), ("tx_batch_size", 257)])
    def test_bounds(self, field, value):
        with pytest.raises(ValueError):
            DemoConfig(role=Role.CONSUMER, **{field: value})
