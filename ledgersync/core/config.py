from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    This uses pydantic-settings so that we get type validation and defaults.
    Settings are loaded from environment variables with optional .env file override.
    """

    # App basics
    ENV: Literal["development", "staging", "production"] = "development"
    """Environment mode: affects logging and whether the mock source may be used."""

    DEBUG: bool = True
    """Enable debug mode: verbose logging and development features."""

    # DB
    DATABASE_URL: Optional[str] = None
    """Database connection URL. If None, uses a local SQLite file."""

    # Sync engine
    SYNC_ENABLED: bool = True
    """Start the scheduler and queue workers with the API process."""

    SYNC_INTERVAL_SECONDS: int = 60
    """Seconds between scheduler ticks."""

    SYNC_STREAM_KEY: str = "transaction-sync"
    """Watermark key for the transaction stream."""

    SYNC_PAGE_SIZE: int = 1000
    """Transactions requested per page from the source."""

    SYNC_RUN_ON_STARTUP: bool = False
    """Fire one sync run immediately when the scheduler starts."""

    # Rate limiting
    RATE_LIMIT_REQUESTS: int = 5
    """Requests admitted per window against the transaction source."""

    RATE_LIMIT_WINDOW_SECONDS: int = 60
    """Length of the sliding rate-limit window."""

    # Page jobs
    JOB_ATTEMPTS: int = 3
    """Attempt budget for each page job."""

    JOB_BACKOFF_SECONDS: float = 1.0
    """Initial retry delay for failed page jobs."""

    JOB_CONCURRENCY: int = 1
    """Page jobs processed concurrently per worker process."""

    # Transaction source
    TRANSACTION_API_URL: Optional[str] = None
    """Base URL of the upstream transaction API. If None, the mock source is used."""

    TRANSACTION_API_KEY: Optional[str] = None
    """Bearer token for the upstream transaction API."""

    TRANSACTION_API_TIMEOUT: float = 30.0
    """Request timeout in seconds for the upstream transaction API."""

    MOCK_TRANSACTION_COUNT: int = 6000
    """Size of the generated transaction corpus served by the mock source."""

    # Model config
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def get_database_url(self) -> str:
        """Return the configured database URL or the local SQLite default."""
        return self.DATABASE_URL or "sqlite+aiosqlite:///./ledgersync.db"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance to avoid re-parsing .env repeatedly."""
    return Settings()
