"""Partition key and topic generation."""

from __future__ import annotations

import random
import uuid
from abc import ABC, abstractmethod

from pqdemo.models.config import DemoConfig
from pqdemo.models.message import KeyPolicy

LOCATION_CODES = ("NA", "UK", "EU", "APAC")

# Every publisher in a run renders order ids with the same width.
ORDER_ID_WIDTH = 5


def format_order_id(order_id: int) -> str:
    return f"{order_id:0{ORDER_ID_WIDTH}d}"


class KeyGenerator(ABC):
    @abstractmethod
    def generate(self) -> str:
        """Return the partition key for the next message."""


class UuidKeyGenerator(KeyGenerator):
    def generate(self) -> str:
        return str(uuid.uuid4())


class OrderIdKeyGenerator(KeyGenerator):
    """Order ids drawn uniformly from 1..unique_keys."""

    def __init__(self, unique_keys: int, rng: random.Random | None = None):
        if unique_keys < 1:
            raise ValueError("unique_keys must be at least 1")
        self.unique_keys = unique_keys
        self._rng = rng or random.Random()

    def generate(self) -> str:
        return format_order_id(self._rng.randint(1, self.unique_keys))

    def all_keys(self) -> set[str]:
        return {format_order_id(i) for i in range(1, self.unique_keys + 1)}


def create_key_generator(
    policy: KeyPolicy, unique_keys: int, rng: random.Random | None = None
) -> KeyGenerator:
    if policy is KeyPolicy.RANDOM_UUID:
        return UuidKeyGenerator()
    return OrderIdKeyGenerator(unique_keys, rng)


class TopicGenerator:
    """Builds ``<prefix>/<location>/<seq>`` topics with a random location code."""

    def __init__(self, prefix: str, rng: random.Random | None = None):
        self.prefix = prefix.rstrip("/")
        self._rng = rng or random.Random()

    def location(self) -> str:
        return self._rng.choice(LOCATION_CODES)

    def topic(self, location: str, seq: int) -> str:
        return f"{self.prefix}/{location}/{seq}"

    @property
    def pattern(self) -> str:
        return f"{self.prefix}/>"


class KeyTopicGenerator:
    """Produces the ``(topic, partition_key)`` pair for each outbound message."""

    def __init__(self, topics: TopicGenerator, keys: KeyGenerator):
        self.topics = topics
        self.keys = keys
        self.last_location: str | None = None

    @classmethod
    def from_config(cls, config: DemoConfig, rng: random.Random | None = None) -> KeyTopicGenerator:
        rng = rng or random.Random()
        return cls(
            TopicGenerator(config.topic_prefix, rng),
            create_key_generator(config.key_policy, config.unique_keys, rng),
        )

    def next(self, seq: int) -> tuple[str, str]:
        location = self.topics.location()
        self.last_location = location
        return self.topics.topic(location, seq), self.keys.generate()
