"""
Error taxonomy shared by every core operation.

Each error carries a stable machine-readable `reason` alongside its
human-readable message so callers can translate outcomes without
parsing text.
"""

from typing import Optional


class FreightLedgerError(Exception):
    """Base class for all errors reported by the core."""
    reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(FreightLedgerError):
    """An entity id or number does not resolve."""
    reason = "not_found"


class PreconditionViolation(FreightLedgerError):
    """The requested transition is not allowed from the current state."""
    reason = "precondition_violation"


class ConflictError(FreightLedgerError):
    """A generated code or application number already exists."""
    reason = "duplicate_code"


class ContentionError(ConflictError):
    """Identifier collisions persisted through every allowed retry."""
    reason = "contention"


class ResourceExhaustedError(FreightLedgerError):
    """A daily sequence ran past its upper bound."""
    reason = "daily_sequence_limit"


class TransientStorageError(FreightLedgerError):
    """A store is unreachable, locked past its timeout, or failed mid-call."""
    reason = "storage_unavailable"
