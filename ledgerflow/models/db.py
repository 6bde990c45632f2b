from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp; every datetime column stores and returns UTC."""
    return datetime.now(UTC)


class EntryDirection(str, Enum):
    """Direction of a ledger entry, seen from the account it is posted to.

    DEBIT lowers the account balance (signed delta ``-amount``), CREDIT raises
    it (``+amount``). The source side of a transfer is always a DEBIT and the
    destination side a CREDIT, so a transfer's signed deltas sum to zero.
    """

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"

    @property
    def sign(self) -> int:
        return -1 if self is EntryDirection.DEBIT else 1


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class JobStatus(str, Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"


class Account(SQLModel, table=True):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    balance: Decimal = Field(default=Decimal("0.00"), max_digits=18, decimal_places=2)
    created_at: datetime = Field(default_factory=utcnow)


class Transaction(SQLModel, table=True):
    __tablename__ = "transactions"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    reference: str
    description: str
    # Key of the request that created this transaction, for recovering a lost response.
    idempotency_key: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    transaction_id: int = Field(foreign_key="transactions.id", index=True)
    account_id: int = Field(foreign_key="accounts.id", index=True)
    amount: Decimal = Field(max_digits=18, decimal_places=2)
    balance_after: Decimal = Field(max_digits=18, decimal_places=2)
    direction: EntryDirection
    created_at: datetime = Field(default_factory=utcnow)


class IdempotencyRecord(SQLModel, table=True):
    __tablename__ = "idempotency_records"

    key: str = Field(primary_key=True)
    request_signature: str
    status: IdempotencyStatus = Field(default=IdempotencyStatus.IN_PROGRESS)
    response_payload: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)


class NotificationJob(SQLModel, table=True):
    __tablename__ = "notification_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    url: str
    payload: str
    transaction_id: int = Field(index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    attempts: int = 0
    max_attempts: int = 5
    next_attempt_at: datetime = Field(default_factory=utcnow, index=True)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NotificationAttempt(SQLModel, table=True):
    __tablename__ = "notification_attempts"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: int = Field(foreign_key="notification_jobs.id", index=True)
    attempt: int
    started_at: datetime
    finished_at: datetime
    succeeded: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None
