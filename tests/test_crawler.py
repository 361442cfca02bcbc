import time

import pytest
from unittest.mock import AsyncMock, patch

from src.minisearch import db_operations as ops
from src.minisearch.config import IndexerConfig
from src.minisearch.crawler import Crawler, CrawlResult, should_retry_status_code
from src.minisearch.errors import PersistenceError
from src.minisearch.hashing import content_simhash
from src.minisearch.indexer import Indexer
from src.minisearch.robots import PolitenessGate

HOME = """
<html><head><title>Home</title><meta name="description" content="Welcome home"></head>
<body><p>Search engines crawl the web.</p>
<a href="/docs">Docs</a>
<a href="https://other.org/page">Other site</a>
</body></html>
"""

DOCS = """
<html><head><title>Docs</title></head>
<body><p>Documentation about indexing.</p><a href="/">Home</a></body></html>
"""


@pytest.fixture
def crawler(db, http_config, crawl_limits, no_robots, fake_web):
    fake_web.pages.update({
        "https://example.com/": HOME,
        "https://example.com/docs": DOCS,
    })
    gate = PolitenessGate(db, http_config, fetch_robots=no_robots)
    return Crawler(db, gate, http_config, crawl_limits, fetcher=fake_web, indexer=Indexer(db, IndexerConfig()))


async def _index_row_count(db):
    async with db.connection() as conn:
        return await conn.fetchval("SELECT COUNT(*) FROM inverted_index")


async def _queue_row(db, url):
    async with db.connection() as conn:
        return await conn.fetchone(
            "SELECT priority, depth, parent_url, status FROM crawl_queue WHERE url = $1", url
        )


class TestCrawl:
    @pytest.mark.asyncio
    async def test_crawl_stores_page_links_and_queue(self, db, crawler):
        result = await crawler.crawl("https://example.com/", depth=0)

        assert result.success is True
        assert result.links_found == 2
        page = await ops.get_page(db, result.page_id)
        assert page["title"] == "Home"
        assert page["is_indexed"] is True
        async with db.connection() as conn:
            stored = await conn.fetchval("SELECT content_simhash FROM pages WHERE id = $1", result.page_id)
        assert stored == content_simhash(HOME)

        assert tuple(await _queue_row(db, "https://example.com/docs")) == (3, 1, "https://example.com/", "PENDING")
        assert tuple(await _queue_row(db, "https://other.org/page")) == (7, 1, "https://example.com/", "PENDING")

        async with db.connection() as conn:
            links = await conn.fetchall("SELECT to_url, link_type, to_page_id FROM links ORDER BY to_url")
        assert [tuple(l) for l in links] == [
            ("https://example.com/docs", "internal", None),
            ("https://other.org/page", "external", None),
        ]

    @pytest.mark.asyncio
    async def test_unchanged_indexed_page_is_skipped(self, db, crawler, fake_web):
        first = await crawler.crawl("https://example.com/")
        rows_before = await _index_row_count(db)

        second = await crawler.crawl("https://example.com/")

        assert second.skipped is True
        assert second.reason == "content unchanged"
        assert second.page_id == first.page_id
        assert await _index_row_count(db) == rows_before
        assert fake_web.requests.count("https://example.com/") == 2

    @pytest.mark.asyncio
    async def test_unchanged_but_unindexed_page_is_reprocessed(self, db, crawler):
        first = await crawler.crawl("https://example.com/")
        await crawler.indexer.reindex_page(first.page_id)

        again = await crawler.crawl("https://example.com/")

        assert again.success is True
        assert (await ops.get_page(db, first.page_id))["is_indexed"] is True

    @pytest.mark.asyncio
    async def test_changed_content_is_reindexed(self, db, crawler, fake_web):
        await crawler.crawl("https://example.com/docs")
        fake_web.pages["https://example.com/docs"] = DOCS.replace("indexing", "ranking")

        result = await crawler.crawl("https://example.com/docs")

        assert result.success is True
        async with db.connection() as conn:
            words = {r[0] for r in await conn.fetchall(
                "SELECT word FROM inverted_index WHERE page_id = $1 AND field_type = 'body'", result.page_id)}
        assert "ranking" in words
        assert "indexing" not in words

    @pytest.mark.asyncio
    async def test_robots_disallowed(self, db, http_config, crawl_limits, fake_web):
        gate = PolitenessGate(db, http_config, fetch_robots=AsyncMock(return_value="User-agent: *\nDisallow: /docs\n"))
        crawler = Crawler(db, gate, http_config, crawl_limits, fetcher=fake_web)

        result = await crawler.crawl("https://example.com/docs")

        assert result.skipped is True
        assert result.reason == "robots.txt disallowed"
        assert fake_web.requests == []

    @pytest.mark.asyncio
    async def test_fetch_failure_is_a_result_not_an_exception(self, crawler):
        result = await crawler.crawl("https://example.com/missing")
        assert result.success is False
        assert result.status_code == 404
        assert "404" in result.error

    @pytest.mark.asyncio
    async def test_max_depth_stops_link_discovery(self, db, crawler, crawl_limits):
        await crawler.crawl("https://example.com/", depth=crawl_limits.max_depth)
        assert await _queue_row(db, "https://example.com/docs") is None

    @pytest.mark.asyncio
    async def test_links_resolve_when_target_is_crawled(self, db, crawler):
        home = await crawler.crawl("https://example.com/")
        docs = await crawler.crawl("https://example.com/docs", depth=1)

        async with db.connection() as conn:
            to_docs = await conn.fetchval(
                "SELECT to_page_id FROM links WHERE from_page_id = $1 AND to_url = $2",
                home.page_id, "https://example.com/docs",
            )
            to_home = await conn.fetchval(
                "SELECT to_page_id FROM links WHERE from_page_id = $1 AND to_url = $2",
                docs.page_id, "https://example.com/",
            )
        assert to_docs == docs.page_id
        assert to_home == home.page_id

    @pytest.mark.asyncio
    async def test_seed_url_is_normalized_like_discovered_links(self, db, crawler, fake_web):
        seed_id = await crawler.add_to_queue("https://EXAMPLE.com")
        assert await crawler.add_to_queue("https://example.com/") == seed_id

        for _ in range(4):
            await crawler.process_queue(5)

        async with db.connection() as conn:
            urls = [r[0] for r in await conn.fetchall("SELECT url FROM pages ORDER BY url")]
            home_id = await conn.fetchval("SELECT id FROM pages WHERE url = $1", "https://example.com/")
            back_link = await conn.fetchval(
                "SELECT to_page_id FROM links WHERE to_url = $1", "https://example.com/"
            )
        assert urls == ["https://example.com/", "https://example.com/docs"]
        assert back_link == home_id
        assert "https://example.com" not in fake_web.requests

    @pytest.mark.asyncio
    async def test_malformed_url_is_a_failed_result(self, crawler, fake_web):
        result = await crawler.crawl("https://example.com:notaport/")
        assert result.success is False
        assert "Malformed url" in result.error
        assert fake_web.requests == []

    @pytest.mark.asyncio
    async def test_failed_indexing_is_retried_on_next_crawl(self, db, crawler):
        failing = AsyncMock(side_effect=PersistenceError("disk full"))
        with patch("src.minisearch.db_operations.upsert_index_rows", new=failing):
            first = await crawler.crawl("https://example.com/docs")

        assert first.success is True
        assert (await ops.get_page(db, first.page_id))["is_indexed"] is False
        assert await _index_row_count(db) == 0

        second = await crawler.crawl("https://example.com/docs")

        assert second.skipped is False
        assert second.success is True
        assert (await ops.get_page(db, first.page_id))["is_indexed"] is True
        assert await _index_row_count(db) > 0


class TestQueue:
    @pytest.mark.asyncio
    async def test_priority_only_lowers(self, db, crawler):
        queue_id = await crawler.add_to_queue("https://example.com/x", priority=5)
        assert await crawler.add_to_queue("https://example.com/x", priority=7) == queue_id
        assert (await _queue_row(db, "https://example.com/x"))[0] == 5
        await crawler.add_to_queue("https://example.com/x", priority=2)
        assert (await _queue_row(db, "https://example.com/x"))[0] == 2

    @pytest.mark.asyncio
    async def test_reinsert_does_not_change_status(self, db, crawler):
        queue_id = await crawler.add_to_queue("https://example.com/x")
        await ops.queue_mark_completed(db, queue_id)
        await crawler.add_to_queue("https://example.com/x", priority=1)
        assert (await _queue_row(db, "https://example.com/x"))[3] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_claim_order_and_exclusivity(self, db, crawler):
        await crawler.add_to_queue("https://example.com/low", priority=9)
        await crawler.add_to_queue("https://example.com/high", priority=1)
        await crawler.add_to_queue("https://example.com/mid", priority=5)

        first = await ops.queue_claim_batch(db, 2)
        second = await ops.queue_claim_batch(db, 2)

        assert [e["url"] for e in first] == ["https://example.com/high", "https://example.com/mid"]
        assert [e["url"] for e in second] == ["https://example.com/low"]
        assert await ops.queue_claim_batch(db, 2) == []

    @pytest.mark.asyncio
    async def test_process_queue(self, db, crawler, fake_web):
        fake_web.pages["https://example.com/flaky"] = 503
        await crawler.add_to_queue("https://example.com/", priority=1)
        await crawler.add_to_queue("https://example.com/missing", priority=2)
        await crawler.add_to_queue("https://example.com/flaky", priority=3)

        stats = await crawler.process_queue(batch_size=3)

        assert stats == {"processed": 3, "successful": 1, "skipped": 0, "failed": 2}
        status = await crawler.queue_status()
        assert status["COMPLETED"] == 1
        assert status["FAILED"] == 2

        async with db.connection() as conn:
            rows = await conn.fetchall(
                "SELECT url, retry_count, next_retry_at, error_message FROM crawl_queue WHERE status = 'FAILED' ORDER BY url"
            )
        failures = {r[0]: r for r in rows}
        flaky = failures["https://example.com/flaky"]
        missing = failures["https://example.com/missing"]
        assert flaky[1] == 1 and flaky[2] is not None
        assert missing[1] == 1 and missing[2] is None
        assert "404" in missing[3]

    @pytest.mark.asyncio
    async def test_process_empty_queue(self, crawler):
        assert await crawler.process_queue(5) == {"processed": 0, "successful": 0, "skipped": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_requeue_failed_after_backoff(self, db, crawler, fake_web):
        fake_web.pages["https://example.com/flaky"] = 503
        queue_id = await crawler.add_to_queue("https://example.com/flaky")
        await crawler.process_queue(1)

        # backoff has not elapsed yet
        assert await crawler.requeue_failed() == 0

        async with db.connection() as conn:
            await conn.execute("UPDATE crawl_queue SET next_retry_at = $1 WHERE id = $2", time.time() - 1, queue_id)
        assert await crawler.requeue_failed() == 1
        entry = await ops.queue_get_entry(db, queue_id)
        assert entry["status"] == "PENDING"
        assert entry["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_retry_cap(self, db, crawler):
        queue_id = await crawler.add_to_queue("https://example.com/x")
        async with db.connection() as conn:
            await conn.execute(
                "UPDATE crawl_queue SET status = 'FAILED', retry_count = 3, next_retry_at = $1 WHERE id = $2",
                time.time() - 1, queue_id,
            )
        assert await crawler.requeue_failed() == 0


def test_next_retry_backoff(http_config, crawl_limits):
    crawler = Crawler(None, None, http_config, crawl_limits)
    now = 1000.0
    assert crawler.next_retry_at(1, 503, now) == pytest.approx(now + 60)
    assert crawler.next_retry_at(2, 0, now) == pytest.approx(now + 120)
    assert crawler.next_retry_at(3, 503, now) is None
    assert crawler.next_retry_at(1, 404, now) is None
    assert crawler.next_retry_at(1, 429, now) == pytest.approx(now + 60)


def test_should_retry_status_code():
    assert should_retry_status_code(0)
    assert should_retry_status_code(502)
    assert should_retry_status_code(429)
    assert not should_retry_status_code(404)
    assert not should_retry_status_code(403)


def test_crawl_result_to_dict_drops_empty_fields():
    assert CrawlResult(url="u", skipped=True, reason="content unchanged").to_dict() == {
        "url": "u", "success": False, "skipped": True, "reason": "content unchanged",
        "status_code": 0, "links_found": 0,
    }
