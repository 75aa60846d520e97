"""Resolved, immutable driver configuration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from pqdemo.models.message import AckMode, KeyPolicy

DEFAULT_QUEUE_NAME = "partitioned-queue-1"
DEFAULT_MSG_VPN = "default"
DEFAULT_TOPIC_PREFIX = "pqdemo"
DEFAULT_PUBLISH_RATE = 10
DEFAULT_NUMBER_OF_KEYS = 20
DEFAULT_TRANSACTED_MSG_COUNT = 8
DEFAULT_WINDOW_SIZE = 10
DEFAULT_RECONNECT_RETRIES = 20
DEFAULT_CONNECT_RETRIES_PER_HOST = 5

MIN_RATE, MAX_RATE = 1, 1000
MIN_TX_COUNT, MAX_TX_COUNT = 1, 256
MIN_WINDOW, MAX_WINDOW = 1, 255


class Role(str, Enum):
    PUBLISHER = "publisher"
    CONSUMER = "consumer"

    @property
    def properties_file(self) -> str:
        return f"{self.value}.properties"


@dataclass(frozen=True)
class DemoConfig:
    """Configuration built once at startup and never mutated afterwards."""

    role: Role
    rate: int = DEFAULT_PUBLISH_RATE
    queue_name: str = DEFAULT_QUEUE_NAME
    vpn_name: str = DEFAULT_MSG_VPN
    key_policy: KeyPolicy = KeyPolicy.ROTATING_ORDER
    unique_keys: int = DEFAULT_NUMBER_OF_KEYS
    tx_batch_size: int = DEFAULT_TRANSACTED_MSG_COUNT
    window_size: int = DEFAULT_WINDOW_SIZE
    ack_mode: AckMode = AckMode.AUTO
    topic_prefix: str = DEFAULT_TOPIC_PREFIX
    reconnect_retries: int = DEFAULT_RECONNECT_RETRIES
    connect_retries_per_host: int = DEFAULT_CONNECT_RETRIES_PER_HOST
    transport: str = "solace"
    transport_properties: Mapping[str, str] = field(default_factory=dict)
    source: str = "<defaults>"
    warnings: tuple[str, ...] = ()

    def __post_init__(self):
        if not MIN_RATE <= self.rate <= MAX_RATE:
            raise ValueError(f"rate must be within [{MIN_RATE}, {MAX_RATE}]")
        if self.unique_keys < 1:
            raise ValueError("unique_keys must be at least 1")
        if not MIN_TX_COUNT <= self.tx_batch_size <= MAX_TX_COUNT:
            raise ValueError(f"tx_batch_size must be within [{MIN_TX_COUNT}, {MAX_TX_COUNT}]")
        if not isinstance(self.transport_properties, MappingProxyType):
            object.__setattr__(
                self, "transport_properties", MappingProxyType(dict(self.transport_properties))
            )
