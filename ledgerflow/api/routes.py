from typing import Optional

from fastapi import APIRouter, Depends, Header

from ..core.dependencies import get_dispatcher, get_ledger_service, get_transfer_gateway
from ..models import (
    BalanceResponse,
    NotificationJobResponse,
    ReconciliationReport,
    TransactionResponse,
    TransferRequest,
    TransferResponse,
)
from ..services import LedgerService, NotificationDispatcher, TransferGateway


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.get("/{account_id}/balance", response_model=BalanceResponse)
def get_balance(
    account_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return service.get_balance(account_id)

transfer_router = APIRouter(prefix="/transfers", tags=["transfers"])

@transfer_router.post("", response_model=TransferResponse)
def create_transfer(
    payload: TransferRequest,
    gateway: TransferGateway = Depends(get_transfer_gateway),
    idempotency_key: Optional[str] = Header(None, convert_underscores=False, alias="Idempotency-Key"),
) -> TransferResponse:
    return gateway.transfer(payload, idempotency_key)

transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])

@transaction_router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionResponse:
    return service.get_transaction(transaction_id)

ledger_router = APIRouter(prefix="/ledger", tags=["ledger"])

@ledger_router.get("/reconciliation", response_model=ReconciliationReport)
def reconcile(service: LedgerService = Depends(get_ledger_service)) -> ReconciliationReport:
    return service.reconcile()

notification_router = APIRouter(prefix="/notifications", tags=["notifications"])

@notification_router.get("/{job_id}", response_model=NotificationJobResponse)
def get_notification(
    job_id: int,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> NotificationJobResponse:
    return dispatcher.get_job(job_id)

@notification_router.post("/{job_id}/replay", response_model=NotificationJobResponse)
def replay_notification(
    job_id: int,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> NotificationJobResponse:
    return dispatcher.replay(job_id)

__all__ = [
    "router",
    "transfer_router",
    "transaction_router",
    "ledger_router",
    "notification_router",
]
