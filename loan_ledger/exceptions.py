"""Exception hierarchy for the loan ledger."""


class LedgerError(Exception):
    """Base exception for all loan ledger errors."""


class ValidationError(LedgerError, ValueError):
    """Bad input, unqualified borrower or exceeded limit. Never retried."""


class NotFoundError(ValidationError):
    """Raised when a loan, record or borrower cannot be found."""


class StateConflictError(LedgerError):
    """Raised when an operation is invalid for the current loan status."""


class TransientInfrastructureError(LedgerError):
    """Storage or payment rail unavailable. Safe to retry with backoff."""


class StorageUnavailableError(TransientInfrastructureError):
    """Raised when the storage backend cannot serve a request."""


class PaymentRailError(TransientInfrastructureError):
    """Raised when the payment rail rejects or fails a transfer."""


class PaymentRailTimeoutError(PaymentRailError):
    """Raised when a payment rail call does not finish within its timeout."""


class FatalDataError(LedgerError):
    """Invariant violation detected. Indicates a bug, never user error."""
