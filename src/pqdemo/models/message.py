"""Message models and partition key policies."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

# Solace's user property name for the queue partition key
QUEUE_PARTITION_KEY = "JMSXGroupID"

PAYLOAD_SIZE = 256


class KeyPolicy(Enum):
    """Partition key generation strategies."""

    RANDOM_UUID = "random-uuid"  # Fresh UUID per message
    ROTATING_ORDER = "rotating-order"  # Order id drawn from 1..K


class AckMode(Enum):
    """How consumed messages are acknowledged."""

    AUTO = "auto"
    CLIENT = "client"


@dataclass(frozen=True)
class OutboundMessage:
    """A message ready for submission; carries exactly one partition key property."""

    payload: bytes
    properties: Mapping[str, str]
    sequence: int = 0

    def __post_init__(self):
        if not isinstance(self.properties, MappingProxyType):
            object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))
        if set(self.properties) != {QUEUE_PARTITION_KEY}:
            raise ValueError(f"outbound message must carry only {QUEUE_PARTITION_KEY}")
        key = self.properties[QUEUE_PARTITION_KEY]
        if not isinstance(key, str) or not key:
            raise ValueError("partition key must be a nonempty string")

    @classmethod
    def with_partition_key(cls, payload: bytes, key: str, sequence: int = 0) -> OutboundMessage:
        return cls(payload=payload, properties={QUEUE_PARTITION_KEY: key}, sequence=sequence)

    @property
    def partition_key(self) -> str:
        return self.properties[QUEUE_PARTITION_KEY]

    def __str__(self) -> str:
        return f"OutboundMessage(seq={self.sequence}, key={self.partition_key!r})"


@dataclass
class InboundMessage:
    """A delivered message; ``handle`` is owned by the transport that produced it."""

    payload: bytes
    redelivered: bool = False
    partition_key: str | None = None
    destination: str | None = None
    handle: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class PublishReceipt:
    """Asynchronous outcome of a non-blocking publish."""

    message: OutboundMessage
    user_context: Any = None
    error: Exception | None = None

    @property
    def is_success(self) -> bool:
        return self.error is None
