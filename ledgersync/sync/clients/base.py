"""
Base transaction source interface.

Defines the paginated contract that every transaction source must implement,
the payload models it returns, and the errors it may raise.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledgersync.db.models.transaction import TransactionKind


class SourceTransaction(BaseModel):
    """Raw transaction as served by the source before normalization."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    created_at: datetime = Field(alias="createdAt")
    type: TransactionKind
    amount: Decimal = Field(ge=0)


class TransactionRecord(BaseModel):
    """Normalized, immutable ledger record."""

    model_config = ConfigDict(frozen=True)

    natural_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    occurred_at: datetime
    kind: TransactionKind
    amount: Decimal = Field(ge=0, decimal_places=2)


class RateLimitInfo(BaseModel):
    """Rate-limit headroom reported alongside a page."""

    limit: int
    remaining: int
    reset_in_seconds: int


class PageMeta(BaseModel):
    """Pagination metadata for one source page."""

    total_items: int = Field(ge=0)
    item_count: int = Field(ge=0)
    items_per_page: int = Field(ge=1)
    total_pages: int = Field(ge=0)
    current_page: int = Field(ge=1)
    rate_limit: Optional[RateLimitInfo] = None


class SourcePage(BaseModel):
    """One page of transactions plus its metadata."""

    items: List[SourceTransaction] = Field(default_factory=list)
    meta: PageMeta


class BaseTransactionSource(ABC):
    """
    Abstract base class for paginated transaction sources.

    Implementations must raise APIRateLimitError (and nothing else) when a
    call is rejected for rate-limit reasons so callers can treat it as
    transient.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the source.

        Args:
            api_key: API authentication key
            base_url: Base URL for the API
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout

    @abstractmethod
    async def fetch_page(
        self,
        start_date: datetime,
        end_date: datetime,
        page: int = 1,
        page_size: int = 1000,
    ) -> SourcePage:
        """
        Fetch one page of transactions that occurred in [start_date, end_date).

        Args:
            start_date: Inclusive lower bound
            end_date: Exclusive upper bound
            page: 1-based page number
            page_size: Items per page

        Returns:
            The requested page with pagination metadata

        Raises:
            APIRateLimitError: If the call was rejected by the rate limit
            APIConnectionError: If the source could not be reached
        """

    @abstractmethod
    def get_source_name(self) -> str:
        """
        Get the name of this transaction source.

        Returns:
            Source identifier (e.g., 'mock')
        """

    def normalize_transaction(self, raw: SourceTransaction) -> TransactionRecord:
        """
        Normalize a source payload to a ledger record.

        Args:
            raw: Transaction from the source

        Returns:
            Ledger record with amount rounded to cents
        """
        return TransactionRecord(
            natural_id=raw.id,
            user_id=raw.user_id,
            occurred_at=raw.created_at,
            kind=raw.type,
            amount=raw.amount.quantize(Decimal("0.01")),
        )


class APIError(Exception):
    """Base exception for transaction source errors."""

    pass


class APIConnectionError(APIError):
    """Raised when the source is unavailable."""

    pass


class APIRateLimitError(APIError):
    """Raised when a call is rejected by a rate limit."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class APIValidationError(APIError):
    """Raised when the source returns data that fails validation."""

    pass
