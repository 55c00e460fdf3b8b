"""
Aggregation engine.

Balances and payout totals are computed by the database in one grouped
query each, so they stay cheap as the ledger grows.
"""

from typing import List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.aggregation.models import AggregatedBalance, PayoutRequest
from ledgersync.db.unit_of_work import UnitOfWork

logger = structlog.get_logger()


class AggregationEngine:
    """Read-side queries over the ledger."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def balance_for(self, user_id: str) -> AggregatedBalance:
        """
        Totals for one user.

        Users with no ledger rows get an all-zero balance rather than an error.
        """
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            earned, spent, payout, count = await uow.transactions.totals_for_user(user_id)

        balance = AggregatedBalance.from_totals(user_id, earned, spent, payout)
        logger.debug(
            "aggregation.balance",
            user_id=user_id,
            rows=count,
            balance=str(balance.balance),
        )
        return balance

    async def pending_payouts(self) -> List[PayoutRequest]:
        """Payout sums per user, ordered by user_id ascending."""
        async with UnitOfWork(session_factory=self._session_factory) as uow:
            totals = await uow.transactions.payout_totals_by_user()
        return [PayoutRequest(user_id=user_id, amount=amount) for user_id, amount in totals]
