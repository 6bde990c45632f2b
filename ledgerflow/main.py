import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import (
    ledger_router,
    notification_router,
    router as accounts_router,
    transaction_router,
    transfer_router,
)
from .core.config import Settings, get_settings
from .core.db import create_engine_for_url, init_db, make_session_factory
from .services import (
    IdempotencyCache,
    NotificationDispatcher,
    RateLimiter,
    TransferExecutor,
    TransferGateway,
)


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.Client] = None,
) -> FastAPI:
    """Build the application; every shared handle is created in the lifespan and released on shutdown."""
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_engine_for_url(settings.database_url, settings.lock_timeout_ms)
        init_db(engine)
        session_factory = make_session_factory(engine)
        client = http_client or httpx.Client(timeout=settings.webhook_timeout_seconds)

        dispatcher = NotificationDispatcher(
            session_factory,
            client,
            max_attempts=settings.webhook_max_attempts,
            backoff_base_seconds=settings.webhook_backoff_base_seconds,
            attempt_timeout_seconds=settings.webhook_timeout_seconds,
            rate_limiter=RateLimiter(
                limit=settings.webhook_rate_limit,
                window_seconds=settings.webhook_rate_window_seconds,
            ),
            workers=settings.webhook_workers,
            poll_interval=settings.webhook_poll_interval,
            stall_timeout_seconds=settings.webhook_stall_timeout_seconds,
        )
        app.state.settings = settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.dispatcher = dispatcher
        app.state.gateway = TransferGateway(
            TransferExecutor(session_factory, settings.lock_timeout_ms),
            IdempotencyCache(session_factory, settings.idempotency_ttl_seconds),
            dispatcher,
            webhook_url=settings.webhook_url,
            wait_seconds=settings.idempotency_wait_seconds,
            poll_interval=settings.idempotency_poll_interval,
        )

        if settings.dispatcher_enabled:
            dispatcher.start()
        try:
            yield
        finally:
            dispatcher.stop()
            if http_client is None:
                client.close()
            engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.include_router(accounts_router)
    app.include_router(transfer_router)
    app.include_router(transaction_router)
    app.include_router(ledger_router)
    app.include_router(notification_router)
    register_exception_handlers(app)

    @app.get("/health")
    def read_health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
