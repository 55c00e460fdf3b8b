"""Throttled page fetches against the transaction source."""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from ledgersync.sync.clients.base import (
    APIRateLimitError,
    BaseTransactionSource,
    PageMeta,
    TransactionRecord,
)
from ledgersync.sync.config import RateLimitConfig
from ledgersync.sync.ratelimit import RateLimiter

logger = structlog.get_logger()


class PageFetcher:
    """
    Wraps TransactionSource.fetch_page with admission control and pacing.

    Before each call the shared limiter must admit the request; a denial
    raises APIRateLimitError without touching the source. Each admitted call
    then waits the pacing delay, so even a single serial worker stays under
    the source's limit. Failures are not retried here; they propagate to
    the job queue.
    """

    def __init__(
        self,
        source: BaseTransactionSource,
        rate_limiter: RateLimiter,
        config: Optional[RateLimitConfig] = None,
        page_size: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.rate_limiter = rate_limiter
        self.config = config or RateLimitConfig()
        self.page_size = page_size
        self._sleep = sleep
        self.api_calls = 0
        self.api_latency_seconds = 0.0

    async def fetch_page(
        self, start_date: datetime, end_date: datetime, page: int
    ) -> Tuple[List[TransactionRecord], PageMeta]:
        """
        Fetch and normalize one page of the window.

        Args:
            start_date: Window start (inclusive)
            end_date: Window end (exclusive)
            page: 1-based page number

        Returns:
            (records, meta) for the page

        Raises:
            APIRateLimitError: If the limiter denied the call or the source rejected it
            APIError: Any other source failure
        """
        admission = await self.rate_limiter.admit(
            self.config.key, self.config.limit, self.config.window_seconds
        )
        if not admission.allowed:
            logger.warning(
                "fetcher.rate_limited",
                page=page,
                key=self.config.key,
                remaining=admission.remaining,
            )
            raise APIRateLimitError(
                f"Local rate limit reached for {self.config.key}",
                retry_after=self.config.window_seconds,
            )

        delay = self.config.get_pacing_delay()
        if delay > 0:
            await self._sleep(delay)

        api_start = time.perf_counter()
        try:
            response = await self.source.fetch_page(
                start_date, end_date, page=page, page_size=self.page_size
            )
        except APIRateLimitError:
            logger.warning(
                "fetcher.source_rate_limited",
                page=page,
                source=self.source.get_source_name(),
            )
            raise
        finally:
            self.api_calls += 1
            self.api_latency_seconds += time.perf_counter() - api_start

        records = [self.source.normalize_transaction(item) for item in response.items]
        logger.debug(
            "fetcher.page_fetched",
            page=page,
            items=len(records),
            total_pages=response.meta.total_pages,
            degraded_admission=admission.degraded,
        )
        return records, response.meta
