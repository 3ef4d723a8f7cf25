"""HTTP client for the upstream billing API.

One call per page; retries and backoff are the FeedCollector's job, so
this client only maps HTTP failures onto FeedError kinds:

- 429 -> FeedRateLimitError (honours Retry-After)
- 5xx, timeouts, connection errors -> retryable FeedError
- other 4xx -> non-retryable FeedError
"""

import asyncio
import json
import math
from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import aiohttp

from core.errors import FeedError, FeedRateLimitError
from core.observability.logging import get_logger
from ingestion.feed import FeedPage, FeedQuery


logger = get_logger(__name__)

RETRYABLE_STATUS = (500, 502, 503, 504)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date).

    Returns None for a missing or unparseable header so the collector falls
    back to its own backoff.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(seconds, 0.0) if math.isfinite(seconds) else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class HttpBillingFeed:
    """BillingFeed over the provider's REST API.

    Usage:
        async with HttpBillingFeed(base_url, token) as feed:
            result = await FeedCollector(feed).collect(queries)
            invoices = await feed.list_invoices(start, end)
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        page_size: int = 250,
        timeout_seconds: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpBillingFeed":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self._session:
            raise FeedError("Not connected. Call connect() first.", retryable=False)

        url = f"{self.base_url}/{endpoint}"
        try:
            async with self._session.request(
                method, url, headers=self._get_headers(), params=params, json=data
            ) as response:
                response_text = await response.text()

                if response.status < 400:
                    return json.loads(response_text) if response_text else {}

                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise FeedRateLimitError(
                        f"Rate limited on {endpoint}",
                        retry_after=parse_retry_after(retry_after),
                    )

                retryable = response.status in RETRYABLE_STATUS
                raise FeedError(
                    f"API error {response.status} on {endpoint}: {response_text[:200]}",
                    retryable=retryable,
                )
        except asyncio.TimeoutError as e:
            raise FeedError(f"Timeout on {endpoint}", retryable=True) from e
        except aiohttp.ClientError as e:
            raise FeedError(f"Connection error on {endpoint}: {e}", retryable=True) from e
        except json.JSONDecodeError as e:
            raise FeedError(f"Invalid JSON from {endpoint}: {e}", retryable=False) from e

    async def fetch_page(self, query: FeedQuery, cursor: Optional[str]) -> FeedPage:
        """POST transactions:query for one page of a chain."""
        body: Dict[str, Any] = {"page_size": self.page_size}
        if query.start_date:
            body["start_date"] = query.start_date.isoformat()
        if query.end_date:
            body["end_date"] = query.end_date.isoformat()
        if query.upstream_invoice_id:
            body["invoice_ids"] = [query.upstream_invoice_id]
        if cursor:
            body["cursor"] = cursor

        payload = await self._request("POST", "transactions:query", data=body)
        return FeedPage(items=payload.get("items") or [], next_cursor=payload.get("next") or None)

    async def list_invoices(self, start_date: date, end_date: date) -> List[Dict[str, Any]]:
        """All provider invoices dated in the window (raw records)."""
        invoices: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        seen = set()
        while True:
            params = {
                "startDate": start_date.isoformat(),
                "endDate": end_date.isoformat(),
                "pageSize": self.page_size,
            }
            if cursor:
                params["cursor"] = cursor
            payload = await self._request("GET", "invoices", params=params)
            invoices.extend(payload.get("items") or [])

            cursor = payload.get("next") or None
            if not cursor or cursor in seen:
                break
            seen.add(cursor)

        logger.info(f"Fetched {len(invoices)} upstream invoices for {start_date}..{end_date}")
        return invoices
