"""
HTTP transaction source.

Talks to a transaction API exposing
`GET /transactions?startDate=&endDate=&page=&limit=` with the paginated
`{items, meta}` response shape.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import ValidationError

from ledgersync.sync.clients.base import (
    APIConnectionError,
    APIError,
    APIRateLimitError,
    APIValidationError,
    BaseTransactionSource,
    PageMeta,
    RateLimitInfo,
    SourcePage,
    SourceTransaction,
)

logger = structlog.get_logger()


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class HttpTransactionSource(BaseTransactionSource):
    """Transaction source backed by a remote paginated API."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://api.example.com
            api_key: Sent as a bearer token when set
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        super().__init__(api_key=api_key, base_url=base_url.rstrip("/"), timeout=timeout)
        self._transport = transport

    def get_source_name(self) -> str:
        return "http"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch_page(
        self,
        start_date: datetime,
        end_date: datetime,
        page: int = 1,
        page_size: int = 1000,
    ) -> SourcePage:
        params = {
            "startDate": _isoformat(start_date),
            "endDate": _isoformat(end_date),
            "page": page,
            "limit": page_size,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get("/transactions", params=params, headers=self._headers())
        except httpx.TransportError as e:
            logger.warning("source.http.unreachable", page=page, error=str(e))
            raise APIConnectionError(f"Transaction API unreachable: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise APIRateLimitError(
                "Transaction API rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise APIConnectionError(
                f"Transaction API returned HTTP {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise APIError(
                f"Transaction API returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            return self._parse_page(response.json())
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise APIValidationError(f"Malformed transaction page: {e}") from e

    def _parse_page(self, body: Dict[str, Any]) -> SourcePage:
        meta = body["meta"]
        rate_limit = meta.get("rateLimit")
        return SourcePage(
            items=[SourceTransaction.model_validate(item) for item in body["items"]],
            meta=PageMeta(
                total_items=meta["totalItems"],
                item_count=meta["itemCount"],
                items_per_page=meta["itemsPerPage"],
                total_pages=meta["totalPages"],
                current_page=meta["currentPage"],
                rate_limit=(
                    RateLimitInfo(
                        limit=rate_limit["limit"],
                        remaining=rate_limit["remaining"],
                        reset_in_seconds=rate_limit["resetInSeconds"],
                    )
                    if rate_limit
                    else None
                ),
            ),
        )
