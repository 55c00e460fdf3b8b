"""
Mock transaction source for testing and development.

Serves a generated corpus of earned/spent/payout transactions through the
same paginated, rate-limited contract a real provider would expose.
"""

import asyncio
import random
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from ledgersync.db.models.transaction import TransactionKind
from ledgersync.sync.clients.base import (
    APIConnectionError,
    APIRateLimitError,
    BaseTransactionSource,
    PageMeta,
    RateLimitInfo,
    SourcePage,
    SourceTransaction,
)
from ledgersync.sync.ratelimit import RateLimiter

DEFAULT_USER_IDS = ("074092", "074093", "074094", "074095", "074096")


class MockTransactionSource(BaseTransactionSource):
    """
    Mock source over an in-memory corpus.

    Enforces its own 5-requests-per-minute limit through the shared
    RateLimiter, like the upstream API it stands in for, and can simulate
    latency and connection failures.
    """

    RATE_LIMIT_KEY = "mock-api:rate-limit"

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        transactions: Optional[Sequence[SourceTransaction]] = None,
        transaction_count: int = 6000,
        user_ids: Sequence[str] = DEFAULT_USER_IDS,
        rate_limit: int = 5,
        rate_limit_window: int = 60,
        latency_ms: int = 200,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        """
        Initialize mock source.

        Args:
            rate_limiter: Limiter enforcing the source-side limit (None disables it)
            transactions: Explicit corpus; generated when omitted
            transaction_count: Size of the generated corpus
            user_ids: Users the generated transactions belong to
            rate_limit: Requests admitted per window
            rate_limit_window: Window length in seconds
            latency_ms: Simulated network latency in milliseconds
            failure_rate: Probability of a simulated connection failure (0.0 to 1.0)
            seed: Seed for reproducible corpora
        """
        super().__init__()
        self.rate_limiter = rate_limiter
        self.rate_limit = rate_limit
        self.rate_limit_window = rate_limit_window
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self._random = random.Random(seed)
        if transactions is None:
            transactions = self._generate_transactions(transaction_count, user_ids)
        self.transactions: List[SourceTransaction] = sorted(
            transactions, key=lambda tx: tx.created_at, reverse=True
        )
        self.fetch_calls = 0

    def get_source_name(self) -> str:
        """Return source identifier."""
        return "mock"

    async def fetch_page(
        self,
        start_date: datetime,
        end_date: datetime,
        page: int = 1,
        page_size: int = 1000,
    ) -> SourcePage:
        """
        Return one page of the corpus filtered to [start_date, end_date).

        Raises:
            APIRateLimitError: When the source-side limit rejects the call
            APIConnectionError: On a simulated failure
        """
        self.fetch_calls += 1

        remaining = self.rate_limit
        if self.rate_limiter is not None:
            admission = await self.rate_limiter.admit(
                self.RATE_LIMIT_KEY, self.rate_limit, self.rate_limit_window
            )
            if not admission.allowed:
                raise APIRateLimitError(
                    "Too many requests, please try again later",
                    retry_after=self.rate_limit_window,
                )
            remaining = admission.remaining

        await self._simulate_latency()

        if self.failure_rate and self._random.random() < self.failure_rate:
            raise APIConnectionError("Simulated source connection failure")

        matching = [
            tx for tx in self.transactions if start_date <= tx.created_at < end_date
        ]
        start_index = (page - 1) * page_size
        items = matching[start_index : start_index + page_size]

        return SourcePage(
            items=items,
            meta=PageMeta(
                total_items=len(matching),
                item_count=len(items),
                items_per_page=page_size,
                total_pages=-(-len(matching) // page_size),
                current_page=page,
                rate_limit=RateLimitInfo(
                    limit=self.rate_limit,
                    remaining=remaining,
                    reset_in_seconds=self.rate_limit_window,
                ),
            ),
        )

    def _generate_transactions(
        self, count: int, user_ids: Sequence[str]
    ) -> List[SourceTransaction]:
        """Generate `count` transactions spread over the last two years."""
        now = datetime.now(timezone.utc)
        span = timedelta(days=730).total_seconds()
        kinds = list(TransactionKind)

        transactions = []
        for _ in range(count):
            created_at = now - timedelta(seconds=self._random.uniform(0, span))
            amount = Decimal(str(round(self._random.random() * 200 + 1, 2)))
            transactions.append(
                SourceTransaction(
                    id=str(uuid.UUID(int=self._random.getrandbits(128), version=4)),
                    user_id=self._random.choice(list(user_ids)),
                    created_at=created_at,
                    type=self._random.choice(kinds),
                    amount=amount,
                )
            )
        return transactions

    async def _simulate_latency(self):
        """Simulate network latency."""
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000.0)
