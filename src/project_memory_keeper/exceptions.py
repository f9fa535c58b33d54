"""Exception hierarchy for the context store.

Every error raised by the storage and manager layers derives from
:class:`MemoryKeeperError` so the service boundary can convert it into a
structured error result with a single ``except`` clause.
"""

from __future__ import annotations


class MemoryKeeperError(Exception):
    """Base class for all context store errors."""

    error_type = "MemoryKeeperError"


class ContextValidationError(MemoryKeeperError, ValueError):
    """Missing or out-of-range operation input.  The document is untouched."""

    error_type = "ValidationError"


class PersistenceError(MemoryKeeperError):
    """A durable write failed.  The in-memory document has been rolled back."""

    error_type = "PersistenceError"


class CorruptContextError(MemoryKeeperError):
    """A persisted document or snapshot could not be read or parsed."""

    error_type = "CorruptionOnLoad"


class CheckpointNotFoundError(MemoryKeeperError, KeyError):
    """No checkpoint snapshot exists for the requested id."""

    error_type = "CheckpointNotFound"

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class UnknownOperationError(MemoryKeeperError):
    """The requested operation name is not registered."""

    error_type = "UnknownOperation"
