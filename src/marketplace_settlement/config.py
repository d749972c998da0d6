"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from marketplace_settlement.config import get_settings
    settings = get_settings()
    print(settings.buyer_request_expiration_days)
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the settlement engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_log_level: str = "DEBUG"

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://marketplace:marketplace_dev"
        "@localhost:5432/marketplace_settlement"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Buyer Requests ---
    buyer_request_expiration_days: int = Field(default=7, ge=1)

    # --- Expiration Sweep ---
    expiration_sweep_enabled: bool = True
    expiration_sweep_interval_minutes: int = Field(default=10, ge=1)

    # --- Notifications ---
    notification_timeout_seconds: float = Field(default=5.0, gt=0)
    notification_max_attempts: int = Field(default=3, ge=1)

    @property
    def is_development(self) -> bool:
        return self.app_env in ("development", "test")

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def buyer_request_horizon(self) -> timedelta:
        """How long a new buyer request stays OPEN before the sweep closes it."""
        return timedelta(days=self.buyer_request_expiration_days)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
