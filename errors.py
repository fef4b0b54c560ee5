from typing import Optional


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    """Malformed draft, rejected before any store write."""

    def __init__(
        self, message: str, errors: Optional[dict[str, list[str]]] = None
    ) -> None:
        super().__init__(message)
        self.errors = errors or {}


class DuplicateTransaction(LedgerError, ValueError):
    pass


class NotFound(LedgerError, LookupError):
    pass


class ConflictRetryable(LedgerError):
    """Write conflict on an account or template row; safe to retry the unit."""


class ExternalServiceError(LedgerError):
    pass


NON_RETRYABLE = (ValidationError, DuplicateTransaction, NotFound)
