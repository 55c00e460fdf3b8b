"""Ledger transaction repository with idempotent writes and aggregations."""

from decimal import Decimal
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import case, func, select

from ledgersync.db.models.transaction import LedgerTransaction, TransactionKind
from ledgersync.db.repository import BaseRepository


class TransactionRepository(BaseRepository[LedgerTransaction]):
    """Repository for LedgerTransaction with batch and aggregate queries."""

    async def get_by_natural_id(self, natural_id: str) -> Optional[LedgerTransaction]:
        """Get a transaction by its source-assigned id."""
        return await self.get_by_field("natural_id", natural_id)

    async def get_existing_natural_ids(self, natural_ids: Iterable[str]) -> Set[str]:
        """
        Return the subset of natural_ids already present in the ledger.

        Args:
            natural_ids: Candidate ids from a source page

        Returns:
            Set of ids that already have a row
        """
        ids = list(natural_ids)
        if not ids:
            return set()

        found: Set[str] = set()
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            result = await self.session.execute(
                select(self.model.natural_id).where(self.model.natural_id.in_(chunk))
            )
            found.update(result.scalars().all())
        return found

    async def add_many(self, rows: List[dict]) -> int:
        """
        Stage new ledger rows and flush them.

        Raises IntegrityError if any row collides with an existing natural_id.
        """
        self.session.add_all([self.model(**row) for row in rows])
        await self.session.flush()
        return len(rows)

    async def totals_for_user(self, user_id: str) -> Tuple[Decimal, Decimal, Decimal, int]:
        """
        Sum amounts by kind for a user in a single grouped pass.

        Returns:
            (earned, spent, payout, row_count); sums are zero when the user has no rows
        """

        def kind_sum(kind: TransactionKind):
            return func.coalesce(
                func.sum(case((self.model.kind == kind.value, self.model.amount), else_=0)),
                0,
            )

        query = select(
            kind_sum(TransactionKind.EARNED),
            kind_sum(TransactionKind.SPENT),
            kind_sum(TransactionKind.PAYOUT),
            func.count(self.model.id),
        ).where(self.model.user_id == user_id)

        row = (await self.session.execute(query)).one()
        earned, spent, payout, count = row
        return _money(earned), _money(spent), _money(payout), int(count or 0)

    async def payout_totals_by_user(self) -> List[Tuple[str, Decimal]]:
        """
        Sum payout amounts grouped by user, ordered by user_id code point.

        Sorted here rather than in SQL, where the order follows the column
        collation and differs between backends.

        Returns:
            List of (user_id, amount) pairs
        """
        query = (
            select(self.model.user_id, func.sum(self.model.amount))
            .where(self.model.kind == TransactionKind.PAYOUT.value)
            .group_by(self.model.user_id)
        )
        result = await self.session.execute(query)
        return sorted(
            ((user_id, _money(amount)) for user_id, amount in result.all()),
            key=lambda row: row[0],
        )


def _money(value) -> Decimal:
    """Normalize driver-returned sums (Decimal, float, int or None) to 2dp Decimal."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.01"))
