"""Response models for ledger aggregations."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, field_serializer

ZERO = Decimal("0.00")


class AggregatedBalance(BaseModel):
    """Per-user totals derived from the ledger."""

    user_id: str = Field(..., description="User the totals belong to")
    earned: Decimal = Field(default=ZERO, description="Sum of earned amounts")
    spent: Decimal = Field(default=ZERO, description="Sum of spent amounts")
    payout: Decimal = Field(default=ZERO, description="Sum of payout amounts")
    balance: Decimal = Field(default=ZERO, description="earned - spent - payout")
    paid_out: Decimal = Field(default=ZERO, description="Payouts considered paid out")

    @classmethod
    def from_totals(
        cls, user_id: str, earned: Decimal, spent: Decimal, payout: Decimal
    ) -> AggregatedBalance:
        # Every payout request counts as paid out
        return cls(
            user_id=user_id,
            earned=earned,
            spent=spent,
            payout=payout,
            balance=earned - spent - payout,
            paid_out=payout,
        )

    @field_serializer("earned", "spent", "payout", "balance", "paid_out", when_used="json")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)


class PayoutRequest(BaseModel):
    """Total payout amount requested by one user."""

    user_id: str
    amount: Decimal

    @field_serializer("amount", when_used="json")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)
