"""Transport implementations and the factory that picks one from configuration."""

from __future__ import annotations

from pqdemo.errors import ConfigInvalid
from pqdemo.models.config import DemoConfig
from pqdemo.transport.base import FlowOptions, MessagePublisher, MessageReceiver, Transport
from pqdemo.transport.memory import InMemoryBroker, MemoryTransport

TRANSPORTS = ("solace", "memory")


def create_transport(config: DemoConfig) -> Transport:
    if config.transport == "memory":
        broker = InMemoryBroker()
        broker.provision_queue(config.queue_name, subscriptions=[f"{config.topic_prefix}/>"])
        return MemoryTransport(broker)

    if config.transport == "solace":
        try:
            from pqdemo.transport.solace import SolaceTransport
        except ImportError as e:
            raise ConfigInvalid(
                "The solace transport needs the vendor SDK: pip install 'pqdemo[solace]'"
            ) from e
        return SolaceTransport(config)

    raise ConfigInvalid(
        f"Unknown transport {config.transport!r}; expected one of {', '.join(TRANSPORTS)}"
    )


__all__ = [
    "TRANSPORTS",
    "FlowOptions",
    "InMemoryBroker",
    "MemoryTransport",
    "MessagePublisher",
    "MessageReceiver",
    "Transport",
    "create_transport",
]
