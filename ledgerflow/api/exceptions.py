from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AccountNotFoundError,
    DuplicateIdempotencyKeyError,
    IdempotencyConflictError,
    IdempotencyUnavailableError,
    InsufficientFundsError,
    InvalidRequestError,
    LedgerError,
    NotificationJobNotFoundError,
    StoreFailureError,
    TransactionNotFoundError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[LedgerError], int] = {
    AccountNotFoundError: 404,
    TransactionNotFoundError: 404,
    NotificationJobNotFoundError: 404,
    InvalidRequestError: 400,
    InsufficientFundsError: 409,
    DuplicateIdempotencyKeyError: 409,
    IdempotencyConflictError: 409,
    IdempotencyUnavailableError: 503,
    StoreFailureError: 503,
}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        status_code = _STATUS_CODES.get(type(exc), 500)
        if status_code >= 500:
            logger.warning("request.failed", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})
