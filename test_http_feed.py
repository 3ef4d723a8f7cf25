"""HTTP billing feed tests against a local aiohttp server."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from email.utils import format_datetime

import pytest
from aiohttp import test_utils, web

from core.errors import FeedError, FeedRateLimitError
from ingestion.feed import FeedCollector, FeedQuery, RetryConfig
from ingestion.http_feed import HttpBillingFeed, parse_retry_after


def run_against(routes, scenario):
    """Start a server with ``routes`` and run ``scenario(feed, seen)``."""
    seen = []

    async def main():
        app = web.Application()
        for method, path, handler in routes:
            async def wrapped(request, handler=handler):
                body = await request.json() if request.can_read_body else None
                seen.append({"path": request.path, "query": dict(request.query), "body": body,
                             "auth": request.headers.get("Authorization")})
                return await handler(request, body)
            app.router.add_route(method, path, wrapped)

        async with test_utils.TestServer(app) as server:
            async with HttpBillingFeed(str(server.make_url("/")), "secret", page_size=2) as feed:
                return await scenario(feed), seen

    return asyncio.run(main())


async def no_sleep(delay):
    return None


def test_fetch_page_sends_query_and_reads_cursor():
    async def handler(request, body):
        return web.json_response({"items": [{"transaction_id": "A"}], "next": "c1"})

    page, seen = run_against(
        [("POST", "/transactions:query", handler)],
        lambda feed: feed.fetch_page(
            FeedQuery("q1", start_date=date(2025, 11, 24), end_date=date(2025, 11, 30), upstream_invoice_id="86"),
            None,
        ),
    )

    assert page.items == [{"transaction_id": "A"}]
    assert page.next_cursor == "c1"
    assert seen[0]["auth"] == "Bearer secret"
    assert seen[0]["body"] == {
        "page_size": 2,
        "start_date": "2025-11-24",
        "end_date": "2025-11-30",
        "invoice_ids": ["86"],
    }


def test_rate_limit_carries_retry_after():
    async def handler(request, body):
        return web.json_response({}, status=429, headers={"Retry-After": "7"})

    async def scenario(feed):
        with pytest.raises(FeedRateLimitError) as info:
            await feed.fetch_page(FeedQuery("q1"), None)
        return info.value

    error, _ = run_against([("POST", "/transactions:query", handler)], scenario)
    assert error.retry_after == 7.0


@pytest.mark.parametrize("header,expected", [
    ("7", 7.0),
    ("-3", 0.0),
    ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
    ("soon", None),
    ("nan", None),
    (None, None),
])
def test_parse_retry_after(header, expected):
    assert parse_retry_after(header) == expected


def test_parse_retry_after_future_http_date():
    when = datetime.now(timezone.utc) + timedelta(seconds=120)
    assert 60 < parse_retry_after(format_datetime(when, usegmt=True)) <= 120


def test_http_date_rate_limit_fails_chain_closed():
    async def handler(request, body):
        return web.json_response({}, status=429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})

    async def scenario(feed):
        collector = FeedCollector(feed, retry_config=RetryConfig(max_retries=1), sleep=no_sleep)
        return await collector.collect([FeedQuery("q1")])

    result, seen = run_against([("POST", "/transactions:query", handler)], scenario)

    assert result.failed_queries == ["q1"]
    assert len(seen) == 2


@pytest.mark.parametrize("status,retryable", [(503, True), (500, True), (401, False), (404, False)])
def test_status_mapping(status, retryable):
    async def handler(request, body):
        return web.Response(status=status, text="nope")

    async def scenario(feed):
        with pytest.raises(FeedError) as info:
            await feed.fetch_page(FeedQuery("q1"), None)
        return info.value

    error, _ = run_against([("POST", "/transactions:query", handler)], scenario)
    assert error.retryable is retryable


def test_collector_follows_pages_and_retries_server_errors():
    calls = {"n": 0}

    async def handler(request, body):
        calls["n"] += 1
        if calls["n"] == 1:
            return web.Response(status=502, text="bad gateway")
        if body.get("cursor") is None:
            return web.json_response({"items": [{"transaction_id": "A"}], "next": "c1"})
        return web.json_response({"items": [{"transaction_id": "B"}]})

    async def scenario(feed):
        collector = FeedCollector(feed, retry_config=RetryConfig(max_retries=2), sleep=no_sleep)
        return await collector.collect([FeedQuery("q1")])

    result, seen = run_against([("POST", "/transactions:query", handler)], scenario)

    assert result.failed_queries == []
    assert [r["transaction_id"] for r in result.chains[0].records] == ["A", "B"]
    assert seen[-1]["body"]["cursor"] == "c1"


def test_list_invoices_paginates():
    async def handler(request, body):
        if request.query.get("cursor") == "p2":
            return web.json_response({"items": [{"invoice_id": 2}]})
        return web.json_response({"items": [{"invoice_id": 1}], "next": "p2"})

    invoices, seen = run_against(
        [("GET", "/invoices", handler)],
        lambda feed: feed.list_invoices(date(2025, 11, 24), date(2025, 11, 30)),
    )

    assert [i["invoice_id"] for i in invoices] == [1, 2]
    assert seen[0]["query"]["startDate"] == "2025-11-24"
