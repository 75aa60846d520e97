"""Error taxonomy shared by the config loader, the transports and the drivers."""

from __future__ import annotations


class PQDemoError(Exception):
    """Base class for all pqdemo errors."""


class ConfigInvalid(PQDemoError):
    """Configuration could not be loaded at all.

    ``exit_code`` is the process status the CLI exits with.
    """

    FILE_MISSING = -1
    IO_ERROR = -2
    OTHER = -3

    def __init__(self, message: str, exit_code: int = OTHER):
        super().__init__(message)
        self.exit_code = exit_code


class InvalidTransition(PQDemoError):
    """A driver attempted an illegal lifecycle transition."""


class TransportError(PQDemoError):
    """Base class for all transport-layer errors."""


class TransportTransient(TransportError):
    """Interruption, reconnection or NACK: log and continue."""


class PublishNack(TransportTransient):
    """The broker rejected a published message."""


class AckTimeout(TransportTransient):
    """No acknowledgment arrived within the await window."""


class CommitFailed(TransportTransient):
    """A transaction commit failed; the broker rolled it back."""


class TransportFatal(TransportError):
    """Unrecoverable flow or session failure."""


class BindError(TransportFatal):
    """The flow could not bind to the queue (missing, shut down, ...)."""


class OperationNotSupported(TransportFatal):
    """The broker does not permit the requested operation."""


class SubmitFailure(TransportError):
    """A publish call raised synchronously."""
