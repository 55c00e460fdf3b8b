"""Aggregated ledger read endpoints."""

from typing import List

from fastapi import APIRouter

from ledgersync.aggregation.engine import AggregationEngine
from ledgersync.aggregation.models import AggregatedBalance, PayoutRequest

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.get("/aggregated/{user_id}", response_model=AggregatedBalance)
async def get_aggregated_balance(user_id: str):
    """Earned, spent and payout totals plus the resulting balance for a user."""
    return await AggregationEngine().balance_for(user_id)


@router.get("/payouts", response_model=List[PayoutRequest])
async def get_requested_payouts():
    """Requested payout amount per user, sorted by user_id."""
    return await AggregationEngine().pending_payouts()
