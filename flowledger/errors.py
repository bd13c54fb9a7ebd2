from __future__ import annotations


class LedgerError(Exception):
    """Base class for errors raised by the flow and schedule engine."""


class FlowValidationError(LedgerError, ValueError):
    """Raised before any write when a flow or schedule payload is malformed."""


class ReferenceNotFound(LedgerError, LookupError):
    """Raised when a referenced asset, debt, category or flow is missing or not owned."""

    def __init__(self, reference: str, message: str | None = None) -> None:
        self.reference = reference
        super().__init__(message or f"{reference} not found or does not belong to user")


class RecordNotFound(LedgerError, LookupError):
    """Raised when the flow or schedule being addressed does not exist in scope."""


class PersistenceError(LedgerError, RuntimeError):
    """Raised when the underlying store rejects a write."""
