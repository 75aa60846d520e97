"""Fixtures for unit tests against the in-memory transport."""

import io

import pytest
from rich.console import Console

from pqdemo.models.config import DEFAULT_QUEUE_NAME, DemoConfig, Role
from pqdemo.transport.memory import InMemoryBroker, MemoryTransport


class FakeClock:
    """Monotonic clock advanced by hand (or by a fake sleep)."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class CapturedConsole:
    def __init__(self):
        self.buffer = io.StringIO()
        self.console = Console(file=self.buffer, width=200, color_system=None)

    def text(self) -> str:
        return self.buffer.getvalue()

    def lines(self) -> list[str]:
        return self.text().splitlines()


@pytest.fixture
def output():
    return CapturedConsole()


@pytest.fixture
def broker():
    broker = InMemoryBroker()
    broker.provision_queue(DEFAULT_QUEUE_NAME, subscriptions=["pqdemo/>"])
    return broker


@pytest.fixture
def transport(broker):
    return MemoryTransport(broker)


@pytest.fixture
def make_config():
    def factory(role: Role = Role.PUBLISHER, **overrides) -> DemoConfig:
        overrides.setdefault("transport", "memory")
        return DemoConfig(role=role, **overrides)

    return factory
