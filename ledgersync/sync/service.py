"""
Wiring for the sync engine.

Builds one rate limiter, source, fetcher, queue, ledger, orchestrator and
scheduler from the configuration and exposes them as a process-wide
service for the API and CLI.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.core.config import get_settings
from ledgersync.sync.clients.base import BaseTransactionSource
from ledgersync.sync.clients.http_client import HttpTransactionSource
from ledgersync.sync.clients.mock_client import MockTransactionSource
from ledgersync.sync.config import SyncConfig, get_sync_config
from ledgersync.sync.fetcher import PageFetcher
from ledgersync.sync.ledger import Ledger
from ledgersync.sync.orchestrator import SyncOrchestrator
from ledgersync.sync.queue import JobQueue
from ledgersync.sync.ratelimit import RateLimiter
from ledgersync.sync.scheduler import SyncScheduler

logger = structlog.get_logger("sync")


class SyncService:
    """Components of one sync engine instance."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        source: Optional[BaseTransactionSource] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Args:
            config: Sync configuration (defaults to get_sync_config())
            source: Transaction source (HTTP when TRANSACTION_API_URL is set, else the mock)
            session_factory: Session factory (defaults to the application's)
        """
        self.config = config or get_sync_config()
        self.rate_limiter = RateLimiter(session_factory=session_factory)
        self.source = source or self._default_source()
        self.fetcher = PageFetcher(
            self.source,
            self.rate_limiter,
            config=self.config.rate_limit,
            page_size=self.config.page_size,
        )
        self.queue = JobQueue(
            config=self.config.queue,
            retry=self.config.retry,
            session_factory=session_factory,
        )
        self.ledger = Ledger(session_factory=session_factory)
        self.orchestrator = SyncOrchestrator(
            self.fetcher,
            self.queue,
            ledger=self.ledger,
            config=self.config,
            session_factory=session_factory,
        )
        self.scheduler = SyncScheduler(
            self.orchestrator,
            interval_seconds=self.config.interval_seconds,
            run_on_startup=self.config.run_on_startup,
        )
        self._manual_runs = 0
        self._manual_workers = False

        logger.info(
            "sync.service.initialized",
            source=self.source.get_source_name(),
            stream_key=self.config.stream_key,
            interval_seconds=self.config.interval_seconds,
        )

    def _default_source(self) -> BaseTransactionSource:
        settings = get_settings()
        if settings.TRANSACTION_API_URL:
            return HttpTransactionSource(
                settings.TRANSACTION_API_URL,
                api_key=settings.TRANSACTION_API_KEY,
                timeout=settings.TRANSACTION_API_TIMEOUT,
            )

        if settings.ENV == "production":
            logger.warning("sync.service.mock_source_in_production")
        return MockTransactionSource(
            rate_limiter=self.rate_limiter,
            transaction_count=settings.MOCK_TRANSACTION_COUNT,
            rate_limit=self.config.rate_limit.limit,
            rate_limit_window=self.config.rate_limit.window_seconds,
        )

    async def start(self) -> None:
        """Start queue workers and the scheduler."""
        # Workers started by a manual run now belong to the service
        self._manual_workers = False
        await self.queue.start()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the scheduler first so no new run fans out to stopped workers."""
        await self.scheduler.stop()
        await self.queue.stop()

    async def run_now(self) -> Dict[str, Any]:
        """
        Execute one run immediately.

        When the service was not started (sync disabled), queue workers run
        in this process for as long as manual runs are in flight, so the
        run's page jobs get processed.
        """
        if not self.queue.running:
            await self.queue.start()
            self._manual_workers = True

        self._manual_runs += 1
        try:
            return await self.orchestrator.run_once()
        finally:
            self._manual_runs -= 1
            if self._manual_workers and self._manual_runs == 0:
                self._manual_workers = False
                await self.queue.stop()

    async def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "source": self.source.get_source_name(),
            "scheduler": self.scheduler.get_status(),
            "queue": {
                "running": self.queue.running,
                "concurrency": self.config.queue.concurrency,
                "jobs": await self.queue.get_counts(),
            },
            "state": await self.orchestrator.get_state(),
            "orchestrator": self.orchestrator.get_status(),
            "fetcher": {
                "api_calls": self.fetcher.api_calls,
                "api_latency_seconds": round(self.fetcher.api_latency_seconds, 3),
            },
        }


# Global sync service instance
_sync_service: Optional[SyncService] = None


def get_sync_service() -> SyncService:
    """Get the global sync service instance."""
    global _sync_service
    if _sync_service is None:
        _sync_service = SyncService()
    return _sync_service


def set_sync_service(service: Optional[SyncService]) -> None:
    """Set (or clear) the global sync service instance."""
    global _sync_service
    _sync_service = service
