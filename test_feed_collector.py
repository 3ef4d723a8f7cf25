"""Feed collector tests: bounded workers, retries, fail-closed chains."""

import asyncio
from datetime import date

from core.errors import FeedError, FeedRateLimitError
from ingestion.feed import FeedCollector, FeedPage, FeedQuery, RetryConfig


async def no_sleep(delay):
    return None


class FakeFeed:
    """Serves scripted pages; an Exception in the script is raised instead."""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_page(self, query, cursor):
        self.calls.append((query.query_id, cursor))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            script = self.pages[(query.query_id, cursor)]
            step = script.pop(0) if isinstance(script, list) else script
            if isinstance(step, Exception):
                raise step
            return step
        finally:
            self.in_flight -= 1


def collect(feed, queries, **kwargs):
    collector = FeedCollector(feed, retry_config=RetryConfig(max_retries=2), sleep=no_sleep, **kwargs)
    return asyncio.run(collector.collect(queries))


def test_follows_cursor_chain():
    feed = FakeFeed({
        ("q1", None): FeedPage([{"transaction_id": "A"}], next_cursor="c1"),
        ("q1", "c1"): FeedPage([{"transaction_id": "B"}], next_cursor=None),
    })
    result = collect(feed, [FeedQuery("q1", start_date=date(2025, 11, 24))])
    assert result.record_count == 2
    assert result.failed_queries == []
    assert result.chains[0].pages == 2


def test_duplicates_across_chains_are_dropped():
    feed = FakeFeed({
        ("q1", None): FeedPage([{"transaction_id": "A"}, {"transaction_id": "B"}]),
        ("q2", None): FeedPage([{"transaction_id": "B"}, {"transaction_id": "C"}]),
    })
    result = collect(feed, [FeedQuery("q1"), FeedQuery("q2")])
    ids = sorted(r["transaction_id"] for c in result.chains for r in c.records)
    assert ids == ["A", "B", "C"]
    assert result.duplicates == 1


def test_transient_error_is_retried():
    feed = FakeFeed({
        ("q1", None): [
            ConnectionError("reset"),
            FeedRateLimitError(retry_after=0.0),
            FeedPage([{"transaction_id": "A"}]),
        ],
    })
    result = collect(feed, [FeedQuery("q1")])
    assert result.record_count == 1
    assert len(feed.calls) == 3


def test_exhausted_chain_fails_closed_and_keeps_fetched_pages():
    feed = FakeFeed({
        ("q1", None): FeedPage([{"transaction_id": "A"}], next_cursor="c1"),
        ("q1", "c1"): FeedError("503 from upstream"),
        ("q2", None): FeedPage([{"transaction_id": "B"}]),
    })
    result = collect(feed, [FeedQuery("q1"), FeedQuery("q2")])
    assert result.failed_queries == ["q1"]
    assert [r["transaction_id"] for r in result.chains[0].records] == ["A"]
    assert result.record_count == 2
    # initial attempt + 2 retries on the failing page
    assert feed.calls.count(("q1", "c1")) == 3


def test_non_retryable_error_is_not_retried():
    feed = FakeFeed({("q1", None): FeedError("401 unauthorized", retryable=False)})
    result = collect(feed, [FeedQuery("q1")])
    assert result.failed_queries == ["q1"]
    assert len(feed.calls) == 1


def test_repeated_cursor_stops_chain():
    feed = FakeFeed({
        ("q1", None): FeedPage([{"transaction_id": "A"}], next_cursor="c1"),
        ("q1", "c1"): FeedPage([{"transaction_id": "B"}], next_cursor="c1"),
    })
    result = collect(feed, [FeedQuery("q1")])
    assert result.failed_queries == ["q1"]
    assert result.record_count == 2


def test_worker_pool_is_bounded():
    pages = {(f"q{i}", None): FeedPage([{"transaction_id": f"T{i}"}]) for i in range(10)}
    feed = FakeFeed(pages)
    result = collect(feed, [FeedQuery(f"q{i}") for i in range(10)], max_workers=3)
    assert result.record_count == 10
    assert feed.max_in_flight <= 3


def test_unexpected_error_fails_only_its_chain():
    feed = FakeFeed({
        ("q1", None): FeedPage([{"transaction_id": "A"}], next_cursor="c1"),
        ("q1", "c1"): ValueError("could not convert string to float"),
        ("q2", None): FeedPage([{"transaction_id": "B"}]),
    })
    result = collect(feed, [FeedQuery("q1"), FeedQuery("q2")])
    assert result.failed_queries == ["q1"]
    assert "ValueError" in result.chains[0].error
    assert result.record_count == 2
    assert feed.calls.count(("q1", "c1")) == 1


def test_duplicate_keeps_the_tenant_scoped_copy():
    feed = FakeFeed({
        ("all", None): FeedPage([{"transaction_id": "R1"}, {"transaction_id": "A"}]),
        ("acme", None): FeedPage([{"transaction_id": "R1"}]),
    })
    result = collect(feed, [FeedQuery("all"), FeedQuery("acme", channel_tenant_id="acme")])
    unscoped, scoped = result.chains
    assert [r["transaction_id"] for r in unscoped.records] == ["A"]
    assert [r["transaction_id"] for r in scoped.records] == ["R1"]
    assert result.duplicates == 1
