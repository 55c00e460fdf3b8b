"""
Transaction sync engine.

Pulls transactions from the paginated upstream source into the local
ledger, incrementally and idempotently, while respecting the source's
rate limit. Pages beyond the first are fanned out as durable queue jobs.
"""

from ledgersync.sync.clients.base import BaseTransactionSource
from ledgersync.sync.clients.mock_client import MockTransactionSource
from ledgersync.sync.metrics import SyncMetrics
from ledgersync.sync.orchestrator import SyncOrchestrator
from ledgersync.sync.scheduler import SyncScheduler

__all__ = [
    "SyncOrchestrator",
    "SyncScheduler",
    "BaseTransactionSource",
    "MockTransactionSource",
    "SyncMetrics",
]
