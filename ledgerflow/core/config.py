from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "LedgerFlow API"
    database_url: str = "sqlite:///ledgerflow.db"
    log_level: str = "INFO"

    # Caller deadline for acquiring both account locks.
    lock_timeout_ms: int = 5000

    idempotency_ttl_seconds: int = 60 * 60 * 24
    idempotency_wait_seconds: float = 10.0
    idempotency_poll_interval: float = 0.05

    # Empty URL disables transfer notifications.
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 5
    webhook_backoff_base_seconds: float = 1.0
    webhook_rate_limit: int = 5
    webhook_rate_window_seconds: float = 1.0
    webhook_workers: int = 4
    webhook_poll_interval: float = 0.5
    # Delivering jobs untouched for this long are assumed orphaned and requeued.
    webhook_stall_timeout_seconds: float = 30.0
    dispatcher_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LEDGER_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
