from fastapi import Depends, Request
from sqlmodel import Session

from ..services import LedgerRepository, LedgerService, NotificationDispatcher, TransferGateway
from .db import get_session


def get_ledger_service(session: Session = Depends(get_session)) -> LedgerService:
    repository = LedgerRepository(session)
    return LedgerService(session, repository)


def get_transfer_gateway(request: Request) -> TransferGateway:
    return request.app.state.gateway


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher
