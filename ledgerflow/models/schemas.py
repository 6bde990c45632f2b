from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .db import EntryDirection, JobStatus

CENT = Decimal("0.01")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransferRequest(CamelModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    reference: str = Field(..., max_length=255, description="Free-text reference shown on the transaction")

    @field_validator("amount")
    @classmethod
    def _two_decimal_places(cls, value: Decimal) -> Decimal:
        return value.quantize(CENT)


class TransferResponse(CamelModel):
    success: bool
    transaction_id: int


class BalanceResponse(CamelModel):
    account_id: int
    balance: Decimal


class LedgerEntryResponse(CamelModel):
    id: int
    transaction_id: int
    account_id: int
    amount: Decimal
    balance_after: Decimal
    direction: EntryDirection
    created_at: datetime


class TransactionResponse(CamelModel):
    id: int
    amount: Decimal
    reference: str
    description: str
    created_at: datetime
    entries: list[LedgerEntryResponse]


class ReconciliationLine(CamelModel):
    account_id: int
    stored_balance: Decimal
    ledger_balance: Decimal
    matches: bool


class ReconciliationReport(CamelModel):
    balanced: bool
    accounts: list[ReconciliationLine]


class NotificationAttemptResponse(CamelModel):
    attempt: int
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class NotificationJobResponse(CamelModel):
    id: int
    url: str
    transaction_id: int
    status: JobStatus
    attempts: int
    max_attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    history: list[NotificationAttemptResponse] = Field(default_factory=list)
