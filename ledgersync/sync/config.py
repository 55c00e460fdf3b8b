"""
Sync engine configuration.

Defines settings for the scheduler cadence, source rate limits,
page-job retry policy and queue workers.
"""

from datetime import timedelta
from typing import Optional

from pydantic import BaseModel, Field

from ledgersync.core.config import Settings, get_settings


class RetryConfig(BaseModel):
    """Attempt budget and exponential backoff for queued jobs."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts per job, first run included")
    initial_delay: float = Field(
        default=1.0, ge=0, description="Delay before the first retry in seconds"
    )
    exponential_base: float = Field(default=2.0, ge=1, description="Backoff multiplier")
    max_delay: float = Field(default=300.0, gt=0, description="Maximum delay in seconds")
    jitter: bool = Field(
        default=False, description="Randomize each delay to 50-100% of its value"
    )


class RateLimitConfig(BaseModel):
    """Limits applied to calls against the transaction source."""

    key: str = Field(default="sync:source-fetch", description="Limiter key for page fetches")
    limit: int = Field(default=5, ge=1, description="Requests per window")
    window_seconds: int = Field(default=60, ge=1, description="Sliding window length")
    pacing_delay_seconds: Optional[float] = Field(
        default=None,
        ge=0,
        description="Sleep before each source call; defaults to window/limit",
    )

    def get_pacing_delay(self) -> float:
        """Delay that keeps a single serial caller under the limit."""
        if self.pacing_delay_seconds is not None:
            return self.pacing_delay_seconds
        return self.window_seconds / self.limit


class QueueConfig(BaseModel):
    """Worker settings for the durable job queue."""

    name: str = Field(default="transaction-sync", description="Queue name")
    concurrency: int = Field(default=1, ge=1, description="Jobs processed at once per process")
    poll_interval_seconds: float = Field(
        default=0.5, gt=0, description="Idle wait between claim attempts"
    )
    lock_seconds: float = Field(
        default=300.0, gt=0, description="Lock on an active job before it counts as stalled"
    )


class SyncConfig(BaseModel):
    """Main sync engine configuration."""

    stream_key: str = Field(default="transaction-sync", description="Watermark key")
    interval_seconds: float = Field(default=60, gt=0, description="Seconds between ticks")
    page_size: int = Field(default=1000, ge=1, le=1000, description="Items per source page")
    run_lease_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Single-flight claim lifetime; a crashed run frees the stream after this",
    )
    page_jobs_timeout_seconds: Optional[float] = Field(
        default=3600.0, gt=0, description="Give up waiting on page jobs after this long"
    )

    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)

    # Operational settings
    enabled: bool = Field(default=True, description="Enable/disable the scheduler")
    run_on_startup: bool = Field(default=False, description="Sync immediately on start")

    def get_run_lease(self) -> timedelta:
        """Run lease as timedelta."""
        return timedelta(seconds=self.run_lease_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncConfig":
        """Build the sync configuration from environment settings."""
        return cls(
            stream_key=settings.SYNC_STREAM_KEY,
            interval_seconds=settings.SYNC_INTERVAL_SECONDS,
            page_size=settings.SYNC_PAGE_SIZE,
            enabled=settings.SYNC_ENABLED,
            run_on_startup=settings.SYNC_RUN_ON_STARTUP,
            retry=RetryConfig(
                max_attempts=settings.JOB_ATTEMPTS,
                initial_delay=settings.JOB_BACKOFF_SECONDS,
            ),
            rate_limit=RateLimitConfig(
                limit=settings.RATE_LIMIT_REQUESTS,
                window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            ),
            queue=QueueConfig(concurrency=settings.JOB_CONCURRENCY),
        )


def get_sync_config() -> SyncConfig:
    """Get sync configuration derived from the current settings."""
    return SyncConfig.from_settings(get_settings())
