from pqdemo.drivers.base import Driver
from pqdemo.drivers.consumer import (
    ConsumerDriver,
    ListenerConsumerDriver,
    TransactedConsumerDriver,
)
from pqdemo.drivers.publisher import BlockingPublisherDriver, PublisherDriver

__all__ = [
    "BlockingPublisherDriver",
    "ConsumerDriver",
    "Driver",
    "ListenerConsumerDriver",
    "PublisherDriver",
    "TransactedConsumerDriver",
]
