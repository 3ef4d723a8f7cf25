"""Upstream billing feed collection.

The feed itself (HTTP client, auth) lives in ``ingestion.http_feed``; this
module only drives it. Each FeedQuery is an independent cursor chain. Chains run on a
bounded pool of workers, retry transient failures with exponential backoff
and fail closed: a chain that exhausts its retries is reported as failed.

Usage:
    collector = FeedCollector(feed, max_workers=4)
    result = await collector.collect([
        FeedQuery("acme-week", start_date=..., end_date=..., channel_tenant_id="acme"),
    ])
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from core.errors import FeedError, FeedRateLimitError
from core.observability.logging import get_logger


logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class FeedQuery:
    """One independent pagination chain: a date slice or one upstream invoice."""
    query_id: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    upstream_invoice_id: Optional[str] = None
    channel_tenant_id: Optional[str] = None


@dataclass
class FeedPage:
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


class BillingFeed(Protocol):
    """Caller-supplied upstream feed."""

    async def fetch_page(self, query: FeedQuery, cursor: Optional[str]) -> FeedPage:
        ...


@dataclass
class ChainResult:
    query: FeedQuery
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class CollectionResult:
    chains: List[ChainResult] = field(default_factory=list)
    duplicates: int = 0

    @property
    def failed_queries(self) -> List[str]:
        return [c.query.query_id for c in self.chains if c.failed]

    @property
    def record_count(self) -> int:
        return sum(len(c.records) for c in self.chains)


RETRYABLE_ERRORS = (asyncio.TimeoutError, ConnectionError)


def _record_id(record: Any) -> Any:
    if not isinstance(record, dict):
        return None
    return record.get("transaction_id") or record.get("id")


class FeedCollector:
    """Fetches every page of every query through a bounded worker pool."""

    def __init__(
        self,
        feed: BillingFeed,
        max_workers: int = 4,
        retry_config: Optional[RetryConfig] = None,
        max_pages: int = 10_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.feed = feed
        self.max_workers = max_workers
        self.retry_config = retry_config or RetryConfig()
        self.max_pages = max_pages
        self._sleep = sleep

    async def collect(self, queries: List[FeedQuery]) -> CollectionResult:
        semaphore = asyncio.Semaphore(self.max_workers)

        async def run(query: FeedQuery) -> ChainResult:
            async with semaphore:
                return await self._collect_chain(query)

        chains = await asyncio.gather(*(run(q) for q in queries))

        # The feed can repeat a charge across pages and across overlapping
        # queries. A copy from a tenant-scoped query keeps its channel.
        owners: Dict[Any, int] = {}
        for index, chain in enumerate(chains):
            for record in chain.records:
                record_id = _record_id(record)
                if record_id is None:
                    continue
                owner = owners.get(record_id)
                if owner is None or (
                    chains[owner].query.channel_tenant_id is None
                    and chain.query.channel_tenant_id is not None
                ):
                    owners[record_id] = index

        result = CollectionResult()
        for index, chain in enumerate(chains):
            unique = []
            kept = set()
            for record in chain.records:
                record_id = _record_id(record)
                if record_id is not None:
                    if owners[record_id] != index or record_id in kept:
                        result.duplicates += 1
                        continue
                    kept.add(record_id)
                unique.append(record)
            chain.records = unique
            result.chains.append(chain)

        logger.info(
            "Feed collection finished",
            extra_fields={
                "queries": len(queries),
                "records": result.record_count,
                "duplicates": result.duplicates,
                "failed_queries": result.failed_queries,
            },
        )
        return result

    async def _collect_chain(self, query: FeedQuery) -> ChainResult:
        chain = ChainResult(query=query)
        cursor: Optional[str] = None
        seen_cursors = set()

        while True:
            try:
                page = await self._fetch_with_retry(query, cursor)
            except FeedError as e:
                chain.error = e.message
                logger.error(
                    f"Feed query {query.query_id} failed after {chain.pages} pages: {e.message}",
                    extra_fields={"query_id": query.query_id},
                )
                return chain
            except Exception as e:
                # A broken feed implementation fails this chain only
                chain.error = f"{type(e).__name__}: {e}"
                logger.exception(
                    f"Feed query {query.query_id} failed unexpectedly after {chain.pages} pages",
                    extra_fields={"query_id": query.query_id},
                )
                return chain

            chain.pages += 1
            chain.records.extend(page.items)

            if not page.next_cursor:
                return chain
            if page.next_cursor in seen_cursors or chain.pages >= self.max_pages:
                chain.error = f"Pagination did not terminate (cursor {page.next_cursor})"
                logger.error(chain.error, extra_fields={"query_id": query.query_id})
                return chain
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor

    async def _fetch_with_retry(self, query: FeedQuery, cursor: Optional[str]) -> FeedPage:
        retry = self.retry_config
        last_error = "unknown error"

        for attempt in range(retry.max_retries + 1):
            try:
                return await self.feed.fetch_page(query, cursor)
            except FeedRateLimitError as e:
                last_error = e.message
                delay = min(e.retry_after, retry.max_delay) if e.retry_after else retry.get_delay(attempt)
            except FeedError as e:
                if not e.retryable:
                    raise
                last_error = e.message
                delay = retry.get_delay(attempt)
            except RETRYABLE_ERRORS as e:
                last_error = f"{type(e).__name__}: {e}"
                delay = retry.get_delay(attempt)

            if attempt < retry.max_retries:
                logger.warning(
                    f"Feed page failed ({last_error}), retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{retry.max_retries})",
                    extra_fields={"query_id": query.query_id, "cursor": cursor},
                )
                await self._sleep(delay)

        raise FeedError(f"Page fetch failed after {retry.max_retries} retries: {last_error}", retryable=False)
