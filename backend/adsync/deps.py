"""Dependency providers and settings management."""

import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: Optional[str] = None
    TOKEN_ENCRYPTION_KEY: str = ""
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # Meta Graph API
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    META_API_VERSION: str = "v18.0"
    META_HTTP_TIMEOUT_SECONDS: float = 60.0
    META_HTTP_MAX_ATTEMPTS: int = 6
    META_HTTP_BASE_DELAY_SECONDS: float = 0.5

    # Async report jobs
    META_POLL_INTERVAL_SECONDS: float = 2.0
    META_POLL_TIMEOUT_SECONDS: float = 900.0  # 15 minutes

    # Sync windows
    META_INCREMENTAL_DAYS: int = 7
    META_REINGEST_OVERLAP_DAYS: int = 3
    META_MAX_SYNC_SPAN_DAYS: int = 1095  # ~37 months of retained history
    META_BACKFILL_CHUNK_DAYS: int = 30

    # Execution
    META_SYNC_CONCURRENCY: int = 4
    META_UPSERT_BATCH_SIZE: int = 500
    META_DEFAULT_INSIGHTS_PROFILE: str = "full"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def require_admin_key(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    """Guard operational endpoints behind the shared admin secret."""
    expected = get_settings().ADMIN_SECRET_KEY
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
