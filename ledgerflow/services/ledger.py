from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.db import SessionFactory
from ..core.errors import (
    AccountNotFoundError,
    InvalidRequestError,
    StoreFailureError,
    TransactionNotFoundError,
)
from ..models import (
    AccountModel,
    BalanceResponse,
    EntryDirection,
    LedgerEntryResponse,
    ReconciliationLine,
    ReconciliationReport,
    TransactionResponse,
)
from .repository import LedgerRepository


logger = logging.getLogger(__name__)


class TransferOutcome(str, Enum):
    COMMITTED = "committed"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one transfer attempt.

    Expected business rejections are returned, not raised, so every caller
    has to decide what each outcome means for it. Only infrastructure
    failures escape as ``StoreFailureError``.
    """

    outcome: TransferOutcome
    transaction_id: Optional[int] = None
    detail: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.outcome is TransferOutcome.COMMITTED


class TransferExecutor:
    """Runs a transfer as one atomic unit of work against the ledger store.

    Both accounts are locked in a single ``SELECT ... FOR UPDATE`` ordered by
    account id, so two transfers over the same pair always request their
    locks in the same order and cannot deadlock, whichever side each one
    names as the source. The balance check and all writes run against that
    locked snapshot.
    """

    def __init__(self, session_factory: SessionFactory, lock_timeout_ms: int = 5000) -> None:
        self.session_factory = session_factory
        self.lock_timeout_ms = lock_timeout_ms

    def execute(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: Decimal,
        reference: str,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        if from_account_id == to_account_id:
            raise InvalidRequestError("Cannot transfer to the same account")
        if amount <= 0:
            raise InvalidRequestError("Transfer amount must be greater than zero")

        with self.session_factory() as session:
            try:
                self._apply_lock_timeout(session)
                result = self._apply(
                    LedgerRepository(session),
                    from_account_id,
                    to_account_id,
                    amount,
                    reference,
                    idempotency_key,
                )
                if result.committed:
                    session.commit()
                else:
                    session.rollback()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception(
                    "transfer.store_failure",
                    extra={
                        "from_account_id": from_account_id,
                        "to_account_id": to_account_id,
                        "amount": str(amount),
                    },
                )
                raise StoreFailureError("Ledger store unavailable, transfer was not applied") from exc

        if result.committed:
            logger.info(
                "transfer.committed",
                extra={
                    "transaction_id": result.transaction_id,
                    "from_account_id": from_account_id,
                    "to_account_id": to_account_id,
                    "amount": str(amount),
                },
            )
        else:
            logger.info(
                "transfer.rejected",
                extra={
                    "outcome": result.outcome.value,
                    "from_account_id": from_account_id,
                    "to_account_id": to_account_id,
                    "amount": str(amount),
                },
            )
        return result

    def find_committed(self, idempotency_key: str, since: datetime) -> Optional[int]:
        """Id of a transaction already committed for ``idempotency_key`` since ``since``."""
        try:
            with self.session_factory() as session:
                transaction = LedgerRepository(session).find_transaction_by_key(idempotency_key, since)
        except SQLAlchemyError as exc:
            raise StoreFailureError("Ledger store unavailable") from exc
        return transaction.id if transaction is not None else None

    def _apply_lock_timeout(self, session: Session) -> None:
        # SQLite gets the same deadline through the connection busy timeout.
        if session.get_bind().dialect.name == "postgresql":
            session.connection().exec_driver_sql(f"SET LOCAL lock_timeout = {int(self.lock_timeout_ms)}")

    def _apply(
        self,
        repository: LedgerRepository,
        from_account_id: int,
        to_account_id: int,
        amount: Decimal,
        reference: str,
        idempotency_key: Optional[str],
    ) -> TransferResult:
        locked = repository.lock_accounts((from_account_id, to_account_id))
        source = locked.get(from_account_id)
        dest = locked.get(to_account_id)
        if source is None or dest is None:
            missing = from_account_id if source is None else to_account_id
            return TransferResult(
                TransferOutcome.ACCOUNT_NOT_FOUND, detail=f"Account {missing} not found"
            )

        if source.balance < amount:
            return TransferResult(
                TransferOutcome.INSUFFICIENT_FUNDS,
                detail=f"Insufficient funds in account {from_account_id}",
            )

        transaction = repository.add_transaction(
            amount=amount,
            reference=reference,
            description=f"Transfer from {from_account_id} to {to_account_id}",
            idempotency_key=idempotency_key,
        )

        source_after = source.balance - amount
        dest_after = dest.balance + amount
        repository.add_entry(
            transaction_id=transaction.id,
            account_id=from_account_id,
            amount=amount,
            balance_after=source_after,
            direction=EntryDirection.DEBIT,
        )
        repository.add_entry(
            transaction_id=transaction.id,
            account_id=to_account_id,
            amount=amount,
            balance_after=dest_after,
            direction=EntryDirection.CREDIT,
        )

        source.balance = source_after
        dest.balance = dest_after
        repository.session.add(source)
        repository.session.add(dest)
        repository.session.flush()

        return TransferResult(TransferOutcome.COMMITTED, transaction_id=transaction.id)


class LedgerService:
    """Read side of the ledger: balances, transactions and reconciliation."""

    def __init__(
        self,
        session: Session,
        repository: Optional[LedgerRepository] = None,
    ) -> None:
        self.session = session
        self.repository = repository or LedgerRepository(session)

    def _get_account(self, account_id: int) -> AccountModel:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def get_balance(self, account_id: int) -> BalanceResponse:
        account = self._get_account(account_id)
        return BalanceResponse(account_id=account.id, balance=account.balance)

    def get_transaction(self, transaction_id: int) -> TransactionResponse:
        transaction = self.repository.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        entries = [
            LedgerEntryResponse(
                id=entry.id,
                transaction_id=entry.transaction_id,
                account_id=entry.account_id,
                amount=entry.amount,
                balance_after=entry.balance_after,
                direction=entry.direction,
                created_at=entry.created_at,
            )
            for entry in self.repository.list_entries(transaction_id)
        ]
        return TransactionResponse(
            id=transaction.id,
            amount=transaction.amount,
            reference=transaction.reference,
            description=transaction.description,
            created_at=transaction.created_at,
            entries=entries,
        )

    def reconcile(self) -> ReconciliationReport:
        """Compare every stored balance with the sum of its signed ledger entries."""
        ledger_balances = self.repository.ledger_balances()
        lines = []
        for account in self.repository.list_accounts():
            ledger_balance = ledger_balances.get(account.id, Decimal("0.00"))
            lines.append(
                ReconciliationLine(
                    account_id=account.id,
                    stored_balance=account.balance,
                    ledger_balance=ledger_balance,
                    matches=account.balance == ledger_balance,
                )
            )

        report = ReconciliationReport(balanced=all(line.matches for line in lines), accounts=lines)
        if not report.balanced:
            logger.error(
                "ledger.reconciliation_mismatch",
                extra={"accounts": [line.account_id for line in lines if not line.matches]},
            )
        return report
