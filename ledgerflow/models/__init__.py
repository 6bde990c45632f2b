from .db import Account as AccountModel
from .db import EntryDirection, IdempotencyStatus, JobStatus
from .db import IdempotencyRecord as IdempotencyRecordModel
from .db import LedgerEntry as LedgerEntryModel
from .db import NotificationAttempt as NotificationAttemptModel
from .db import NotificationJob as NotificationJobModel
from .db import Transaction as TransactionModel
from .db import utcnow
from .schemas import (
    BalanceResponse,
    LedgerEntryResponse,
    NotificationAttemptResponse,
    NotificationJobResponse,
    ReconciliationLine,
    ReconciliationReport,
    TransactionResponse,
    TransferRequest,
    TransferResponse,
)

__all__ = [
    "BalanceResponse",
    "LedgerEntryResponse",
    "NotificationAttemptResponse",
    "NotificationJobResponse",
    "ReconciliationLine",
    "ReconciliationReport",
    "TransactionResponse",
    "TransferRequest",
    "TransferResponse",
    "AccountModel",
    "TransactionModel",
    "LedgerEntryModel",
    "IdempotencyRecordModel",
    "NotificationJobModel",
    "NotificationAttemptModel",
    "EntryDirection",
    "IdempotencyStatus",
    "JobStatus",
    "utcnow",
]
