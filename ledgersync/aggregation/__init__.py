"""
Read-only aggregations over the synced ledger.

Per-user balances and pending payout totals, computed on demand in the
database.
"""

from ledgersync.aggregation.engine import AggregationEngine
from ledgersync.aggregation.models import AggregatedBalance, PayoutRequest

__all__ = ["AggregationEngine", "AggregatedBalance", "PayoutRequest"]
