"""Transaction source implementations."""

from ledgersync.sync.clients.base import (
    BaseTransactionSource,
    SourcePage,
    SourceTransaction,
    TransactionRecord,
)
from ledgersync.sync.clients.http_client import HttpTransactionSource
from ledgersync.sync.clients.mock_client import MockTransactionSource

__all__ = [
    "BaseTransactionSource",
    "SourcePage",
    "SourceTransaction",
    "TransactionRecord",
    "HttpTransactionSource",
    "MockTransactionSource",
]
