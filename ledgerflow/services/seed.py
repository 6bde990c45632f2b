"""Seed the ledger with demo accounts.

Run with ``python -m ledgerflow.services.seed``. Existing ledger data is
removed first.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlmodel import Session, SQLModel

from ..core.config import get_settings
from ..core.db import create_engine_for_url, init_db
from ..models import AccountModel, EntryDirection
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

DEMO_ACCOUNTS = (("Alice", Decimal("1000.00")), ("Bob", Decimal("1000.00")))


def seed_accounts(
    session: Session,
    accounts: Iterable[tuple[str, Decimal]],
) -> list[AccountModel]:
    """Create accounts, posting each opening balance as an initial deposit.

    The deposit is a one-sided CREDIT entry, so the stored balance always
    matches the sum of the account's ledger entries.
    """
    repository = LedgerRepository(session)
    created = []
    for name, opening_balance in accounts:
        account = repository.add_account(name)
        if opening_balance > 0:
            transaction = repository.add_transaction(
                amount=opening_balance,
                reference="Initial Deposit",
                description=f"Seed initial balance for {name}",
            )
            repository.add_entry(
                transaction_id=transaction.id,
                account_id=account.id,
                amount=opening_balance,
                balance_after=opening_balance,
                direction=EntryDirection.CREDIT,
            )
            account.balance = opening_balance
            session.add(account)
        created.append(account)
    session.commit()
    for account in created:
        session.refresh(account)
    return created


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    engine = create_engine_for_url(settings.database_url, settings.lock_timeout_ms)
    SQLModel.metadata.drop_all(engine)
    init_db(engine)
    with Session(engine) as session:
        accounts = seed_accounts(session, DEMO_ACCOUNTS)
    logger.info("ledger.seeded", extra={"accounts": [account.id for account in accounts]})
    engine.dispose()


if __name__ == "__main__":
    main()
