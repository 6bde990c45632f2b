class LedgerError(Exception):
    """Base class for every error the ledger surfaces to callers."""


class AccountNotFoundError(LedgerError):
    """Raised when an account id is missing from the store."""


class InsufficientFundsError(LedgerError):
    """Raised when a transfer would drop the source balance below zero."""


class InvalidRequestError(LedgerError, ValueError):
    """Raised for missing or malformed input, e.g. no idempotency key."""


class DuplicateIdempotencyKeyError(LedgerError):
    """Raised when the same idempotency key is reused with different input."""


class IdempotencyConflictError(LedgerError):
    """Raised when a request with the same key is still being processed."""


class IdempotencyUnavailableError(LedgerError):
    """Raised when the idempotency cache cannot be consulted."""


class StoreFailureError(LedgerError):
    """Transient store failure. Nothing was committed; the call may be retried."""


class NotificationJobNotFoundError(LedgerError):
    """Raised when a notification job id is unknown."""


class TransactionNotFoundError(LedgerError):
    """Raised when a transaction id is missing from the store."""
