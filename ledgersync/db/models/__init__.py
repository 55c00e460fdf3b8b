"""Database models for the ledger sync service."""

from .transaction import LedgerTransaction, TransactionKind
from .sync_state import SyncState
from .page_job import PageJob, JobStatus
from .rate_limit import RateLimitHit, RateLimitWindow

__all__ = [
    "LedgerTransaction",
    "TransactionKind",
    "SyncState",
    "PageJob",
    "JobStatus",
    "RateLimitHit",
    "RateLimitWindow",
]
