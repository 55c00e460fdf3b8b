"""
Sliding-window rate limiter over the shared database.

Every check appends the attempt to the key's log, prunes entries older than
the window and counts what is left. Because the log lives in the database
it is shared by every fetcher in every process pointed at the same store.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from ledgersync.db.unit_of_work import UnitOfWork

logger = structlog.get_logger()


class AdmissionDecision(str, Enum):
    """Outcome of a rate-limit check."""

    ADMITTED = "admitted"
    DENIED = "denied"
    DEGRADED = "degraded"  # Store unreachable, admitted without enforcement


@dataclass(frozen=True)
class AdmissionResult:
    """Result of RateLimiter.admit."""

    decision: AdmissionDecision
    remaining: int
    request_count: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.decision != AdmissionDecision.DENIED

    @property
    def degraded(self) -> bool:
        return self.decision == AdmissionDecision.DEGRADED


class RateLimiter:
    """
    Sliding-window log limiter.

    Denied attempts are logged too, so a caller that keeps hammering a
    saturated key stays denied until it backs off for a full window.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the limiter.

        Args:
            session_factory: Session factory for the counter store
                (defaults to the application's)
            clock: Epoch-seconds clock, injectable for tests
        """
        self._session_factory = session_factory
        self._clock = clock
        self._lock = asyncio.Lock()

    async def admit(self, key: str, limit: int, window_seconds: int) -> AdmissionResult:
        """
        Record an attempt under `key` and decide whether it may proceed.

        Args:
            key: Limiter key shared by all callers of one resource
            limit: Maximum attempts admitted per window
            window_seconds: Sliding window length

        Returns:
            AdmissionResult; DEGRADED (allowed) if the store is unreachable
        """
        now = self._clock()
        window_start = now - window_seconds
        now_dt = datetime.fromtimestamp(now, tz=timezone.utc)

        try:
            # Serialize checks from this process; the key row serializes across processes
            async with self._lock:
                async with UnitOfWork(session_factory=self._session_factory) as uow:
                    await uow.rate_limits.purge_expired(now_dt)
                    await uow.rate_limits.refresh_expiry(
                        key, now_dt + timedelta(seconds=window_seconds)
                    )
                    await uow.rate_limits.record_hit(key, now)
                    await uow.rate_limits.prune_before(key, window_start)
                    request_count = await uow.rate_limits.count_hits(key)
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "ratelimit.degraded",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return AdmissionResult(decision=AdmissionDecision.DEGRADED, remaining=1)

        remaining = max(0, limit - request_count)
        decision = (
            AdmissionDecision.ADMITTED if request_count <= limit else AdmissionDecision.DENIED
        )

        logger.debug(
            "ratelimit.checked",
            key=key,
            decision=decision.value,
            remaining=remaining,
            request_count=request_count,
        )
        return AdmissionResult(
            decision=decision, remaining=remaining, request_count=request_count
        )
