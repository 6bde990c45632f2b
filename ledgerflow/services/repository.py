from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import case, func
from sqlmodel import Session, select

from ..models import AccountModel, EntryDirection, LedgerEntryModel, TransactionModel


class LedgerRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Account operations -------------------------------------------------
    def add_account(self, name: str, balance: Decimal = Decimal("0.00")) -> AccountModel:
        account = AccountModel(name=name, balance=balance)
        self.session.add(account)
        self.session.flush()
        self.session.refresh(account)
        return account

    def get_account(self, account_id: int) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def list_accounts(self) -> list[AccountModel]:
        return list(self.session.exec(select(AccountModel).order_by(AccountModel.id)))

    def lock_accounts(self, account_ids: Iterable[int]) -> dict[int, AccountModel]:
        """Lock the given accounts FOR UPDATE in one statement, lowest id first."""
        lock_ids = sorted(set(account_ids))
        stmt = (
            select(AccountModel)
            .where(AccountModel.id.in_(lock_ids))
            .order_by(AccountModel.id)
            .with_for_update()
        )
        return {account.id: account for account in self.session.exec(stmt)}

    # Transactions -------------------------------------------------------
    def add_transaction(
        self,
        *,
        amount: Decimal,
        reference: str,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> TransactionModel:
        transaction = TransactionModel(
            amount=amount,
            reference=reference,
            description=description,
            idempotency_key=idempotency_key,
        )
        self.session.add(transaction)
        self.session.flush()
        self.session.refresh(transaction)
        return transaction

    def get_transaction(self, transaction_id: int) -> Optional[TransactionModel]:
        return self.session.get(TransactionModel, transaction_id)

    def find_transaction_by_key(self, idempotency_key: str, since: datetime) -> Optional[TransactionModel]:
        """Latest transaction created for ``idempotency_key`` at or after ``since``."""
        stmt = (
            select(TransactionModel)
            .where(TransactionModel.idempotency_key == idempotency_key)
            .where(TransactionModel.created_at >= since)
            .order_by(TransactionModel.id.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()

    # Ledger entries -----------------------------------------------------
    def add_entry(
        self,
        *,
        transaction_id: int,
        account_id: int,
        amount: Decimal,
        balance_after: Decimal,
        direction: EntryDirection,
    ) -> LedgerEntryModel:
        entry = LedgerEntryModel(
            transaction_id=transaction_id,
            account_id=account_id,
            amount=amount,
            balance_after=balance_after,
            direction=direction,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_entries(self, transaction_id: int) -> list[LedgerEntryModel]:
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.transaction_id == transaction_id)
            .order_by(LedgerEntryModel.id)
        )
        return list(self.session.exec(stmt))

    def ledger_balances(self) -> dict[int, Decimal]:
        """Balance of every account recomputed from its signed entries."""
        signed_amount = case(
            (LedgerEntryModel.direction == EntryDirection.DEBIT, -LedgerEntryModel.amount),
            else_=LedgerEntryModel.amount,
        )
        stmt = select(LedgerEntryModel.account_id, func.sum(signed_amount)).group_by(
            LedgerEntryModel.account_id
        )
        return {
            account_id: Decimal(total or 0).quantize(Decimal("0.01"))
            for account_id, total in self.session.exec(stmt)
        }
