"""Execution result dataclass."""

from __future__ import annotations

from dataclasses import dataclass

from pqdemo.drivers.lifecycle import DriverState


@dataclass
class ExecutionResult:
    """Totals reported by a driver once it has closed."""

    messages_published: int = 0
    messages_received: int = 0
    redeliveries: int = 0
    nacks: int = 0
    ack_timeouts: int = 0
    commits: int = 0
    commit_failures: int = 0
    duration_seconds: float = 0.0
    final_state: DriverState = DriverState.CONFIGURING
    shutdown_reason: str | None = None
