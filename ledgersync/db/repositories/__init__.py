"""Repository exports."""

from .transaction_repository import TransactionRepository
from .sync_state_repository import SyncStateRepository
from .page_job_repository import PageJobRepository
from .rate_limit_repository import RateLimitRepository

__all__ = [
    "TransactionRepository",
    "SyncStateRepository",
    "PageJobRepository",
    "RateLimitRepository",
]
