"""Rate-controlled, partition-keyed publish/consume drivers for partitioned queues."""

__version__ = "0.1.0"
