"""Tests for ledger aggregations."""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledgersync.aggregation.engine import AggregationEngine
from ledgersync.aggregation.models import AggregatedBalance
from ledgersync.db.models import LedgerTransaction, TransactionKind
from ledgersync.db.repositories import TransactionRepository
from ledgersync.sync.clients.base import TransactionRecord
from ledgersync.sync.ledger import Ledger


async def seed(test_db, rows):
    records = [
        TransactionRecord(
            natural_id=f"seed-{i}",
            user_id=user_id,
            occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            kind=kind,
            amount=Decimal(amount),
        )
        for i, (user_id, kind, amount) in enumerate(rows)
    ]
    await Ledger(session_factory=test_db).upsert_batch(records)


@pytest.mark.asyncio
class TestBalance:
    """Tests for balance_for."""

    async def test_balance_arithmetic(self, test_db):
        await seed(
            test_db,
            [
                ("074092", TransactionKind.EARNED, "100.00"),
                ("074092", TransactionKind.EARNED, "50.25"),
                ("074092", TransactionKind.SPENT, "30.00"),
                ("074092", TransactionKind.PAYOUT, "20.10"),
                ("074093", TransactionKind.EARNED, "999.99"),
            ],
        )

        balance = await AggregationEngine(session_factory=test_db).balance_for("074092")

        assert balance.user_id == "074092"
        assert balance.earned == Decimal("150.25")
        assert balance.spent == Decimal("30.00")
        assert balance.payout == Decimal("20.10")
        assert balance.balance == Decimal("100.15")
        assert balance.paid_out == Decimal("20.10")

    async def test_unknown_user_is_all_zero(self, test_db):
        balance = await AggregationEngine(session_factory=test_db).balance_for("nobody")

        assert balance == AggregatedBalance(user_id="nobody")
        assert balance.balance == Decimal("0")

    async def test_balance_can_be_negative(self, test_db):
        await seed(
            test_db,
            [
                ("074094", TransactionKind.EARNED, "10.00"),
                ("074094", TransactionKind.SPENT, "25.00"),
            ],
        )

        balance = await AggregationEngine(session_factory=test_db).balance_for("074094")

        assert balance.balance == Decimal("-15.00")

    def test_json_amounts_are_numbers(self):
        balance = AggregatedBalance.from_totals(
            "074092", Decimal("10.50"), Decimal("2.25"), Decimal("1.00")
        )

        data = balance.model_dump(mode="json")

        assert data == {
            "user_id": "074092",
            "earned": 10.5,
            "spent": 2.25,
            "payout": 1.0,
            "balance": 7.25,
            "paid_out": 1.0,
        }


@pytest.mark.asyncio
class TestPendingPayouts:
    """Tests for pending_payouts."""

    async def test_payouts_grouped_and_sorted(self, test_db):
        await seed(
            test_db,
            [
                ("074096", TransactionKind.PAYOUT, "5.00"),
                ("074092", TransactionKind.PAYOUT, "1.50"),
                ("074094", TransactionKind.PAYOUT, "2.00"),
                ("074092", TransactionKind.PAYOUT, "3.50"),
                ("074093", TransactionKind.EARNED, "100.00"),
            ],
        )

        payouts = await AggregationEngine(session_factory=test_db).pending_payouts()

        assert [(p.user_id, p.amount) for p in payouts] == [
            ("074092", Decimal("5.00")),
            ("074094", Decimal("2.00")),
            ("074096", Decimal("5.00")),
        ]

    async def test_no_payouts(self, test_db):
        assert await AggregationEngine(session_factory=test_db).pending_payouts() == []

    async def test_payouts_sorted_by_code_point_regardless_of_query_order(self):
        """Ordering does not depend on the database collation."""
        rows = [
            ("b-user", Decimal("1.00")),
            ("B-user", Decimal("2.00")),
            ("a-user", Decimal("3.00")),
        ]
        session = AsyncMock()
        session.execute.return_value = MagicMock(all=MagicMock(return_value=rows))

        totals = await TransactionRepository(LedgerTransaction, session).payout_totals_by_user()

        assert [user_id for user_id, _ in totals] == ["B-user", "a-user", "b-user"]
