from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from ..core.errors import (
    AccountNotFoundError,
    IdempotencyConflictError,
    IdempotencyUnavailableError,
    InsufficientFundsError,
    InvalidRequestError,
    StoreFailureError,
)
from ..models import TransferRequest, TransferResponse
from .idempotency import IdempotencyCache, encode_signature
from .ledger import TransferExecutor, TransferOutcome, TransferResult
from .notifications import TRANSFER_SUCCESS_EVENT, NotificationDispatcher, NotificationJobSpec


logger = logging.getLogger(__name__)

_OUTCOME_ERRORS = {
    TransferOutcome.ACCOUNT_NOT_FOUND: AccountNotFoundError,
    TransferOutcome.INSUFFICIENT_FUNDS: InsufficientFundsError,
}


class TransferGateway:
    """Idempotent entry point for transfers.

    Claims the idempotency key, runs the transfer, queues the notification
    and records the response, in that order. A duplicate request that
    arrives while the first one is still running waits for its response.
    """

    def __init__(
        self,
        executor: TransferExecutor,
        cache: IdempotencyCache,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        webhook_url: str = "",
        wait_seconds: float = 10.0,
        poll_interval: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.cache = cache
        self.dispatcher = dispatcher
        self.webhook_url = webhook_url
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._monotonic = monotonic

    def transfer(self, payload: TransferRequest, idempotency_key: Optional[str]) -> TransferResponse:
        if idempotency_key is None or not idempotency_key.strip():
            raise InvalidRequestError("Idempotency-Key header is required")

        signature = encode_signature(payload.model_dump(mode="json"))
        cached = self._claim(idempotency_key, signature)
        if cached is not None:
            logger.info(
                "idempotent.transfer.hit",
                extra={
                    "from_account_id": payload.from_account_id,
                    "to_account_id": payload.to_account_id,
                    "idempotency_key": idempotency_key,
                },
            )
            return TransferResponse.model_validate_json(cached)

        try:
            result = self.executor.execute(
                payload.from_account_id,
                payload.to_account_id,
                payload.amount,
                payload.reference,
                idempotency_key=idempotency_key,
            )
        except Exception:
            self._release(idempotency_key)
            raise

        if not result.committed:
            self._release(idempotency_key)
            raise _OUTCOME_ERRORS[result.outcome](result.detail)

        response = TransferResponse(success=True, transaction_id=result.transaction_id)
        self._notify(payload, result)
        try:
            self.cache.store(idempotency_key, response.model_dump_json(by_alias=True))
        except IdempotencyUnavailableError:
            # A retry with this key rebuilds the response from the committed transaction.
            logger.exception(
                "idempotency.store_failed",
                extra={"idempotency_key": idempotency_key, "transaction_id": result.transaction_id},
            )
        return response

    def _claim(self, idempotency_key: str, signature: str) -> Optional[str]:
        """Reserve the key; return a cached response if the request already ran."""
        deadline = self._monotonic() + self.wait_seconds
        while True:
            reservation = self.cache.reserve(idempotency_key, signature)
            if reservation.acquired:
                return None
            if reservation.completed:
                return reservation.record.response_payload
            if reservation.record is not None:
                recovered = self._recover(idempotency_key, reservation.record.created_at)
                if recovered is not None:
                    return recovered
            if self._monotonic() >= deadline:
                raise IdempotencyConflictError(
                    "A request with this Idempotency-Key is still being processed"
                )
            self._sleep(self.poll_interval)

    def _recover(self, idempotency_key: str, claimed_at: datetime) -> Optional[str]:
        """Rebuild the response of a claim whose transfer committed but was never recorded."""
        transaction_id = self.executor.find_committed(idempotency_key, claimed_at)
        if transaction_id is None:
            return None

        cached = TransferResponse(success=True, transaction_id=transaction_id).model_dump_json(by_alias=True)
        try:
            self.cache.store(idempotency_key, cached)
        except IdempotencyUnavailableError:
            logger.exception(
                "idempotency.store_failed",
                extra={"idempotency_key": idempotency_key, "transaction_id": transaction_id},
            )
        logger.warning(
            "idempotent.transfer.recovered",
            extra={"idempotency_key": idempotency_key, "transaction_id": transaction_id},
        )
        return cached

    def _release(self, idempotency_key: str) -> None:
        try:
            self.cache.release(idempotency_key)
        except IdempotencyUnavailableError:
            logger.exception("idempotency.release_failed", extra={"idempotency_key": idempotency_key})

    def _notify(self, payload: TransferRequest, result: TransferResult) -> None:
        if self.dispatcher is None or not self.webhook_url:
            return
        spec = NotificationJobSpec(
            url=self.webhook_url,
            transaction_id=result.transaction_id,
            payload={
                "event": TRANSFER_SUCCESS_EVENT,
                "transactionId": result.transaction_id,
                "amount": str(payload.amount),
                "fromAccountId": payload.from_account_id,
                "toAccountId": payload.to_account_id,
                "reference": payload.reference,
            },
        )
        try:
            self.dispatcher.enqueue(spec)
        except StoreFailureError:
            logger.exception(
                "notification.enqueue_failed",
                extra={"transaction_id": result.transaction_id},
            )
