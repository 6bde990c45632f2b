from .gateway import TransferGateway
from .idempotency import IdempotencyCache, Reservation
from .ledger import LedgerService, TransferExecutor, TransferOutcome, TransferResult
from .notifications import NotificationDispatcher, NotificationJobSpec, RateLimiter
from .repository import LedgerRepository

__all__ = [
    "IdempotencyCache",
    "LedgerRepository",
    "LedgerService",
    "NotificationDispatcher",
    "NotificationJobSpec",
    "RateLimiter",
    "Reservation",
    "TransferExecutor",
    "TransferGateway",
    "TransferOutcome",
    "TransferResult",
]
