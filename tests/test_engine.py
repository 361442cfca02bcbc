import pytest
import pytest_asyncio

from src.minisearch.engine import REINDEX_PRIORITY, SearchEngine
from src.minisearch import db_operations as ops

SITE = {
    "https://example.com/": """
        <html><head><title>Example Home</title><meta name="description" content="Python search engine demo"></head>
        <body><p>Python crawler and search engine.</p>
        <a href="/guide">Guide</a><a href="/about">About</a></body></html>
    """,
    "https://example.com/guide": """
        <html><head><title>Python Guide</title></head>
        <body><p>A python guide for crawling websites.</p><a href="/">Home</a></body></html>
    """,
    "https://example.com/about": """
        <html><head><title>About</title></head>
        <body><p>About this python project.</p><a href="/">Home</a><a href="/guide">Guide</a></body></html>
    """,
}


@pytest_asyncio.fixture
async def engine(engine_config, fake_web, no_robots):
    fake_web.pages.update(SITE)
    async with SearchEngine(engine_config, fetcher=fake_web, fetch_robots=no_robots) as engine:
        yield engine


async def crawl_site(engine):
    await engine.add_to_queue("https://example.com/", priority=1)
    total = {"processed": 0, "successful": 0, "skipped": 0, "failed": 0}
    while True:
        stats = await engine.process_queue(batch_size=5)
        if not stats["processed"]:
            return total
        for key in total:
            total[key] += stats[key]


@pytest.mark.asyncio
async def test_crawl_index_rank_and_search(engine):
    totals = await crawl_site(engine)
    assert totals == {"processed": 3, "successful": 3, "skipped": 0, "failed": 0}

    await engine.calculate_page_rank()

    response = await engine.search("python guide")
    assert response["success"] is True
    urls = [r["url"] for r in response["results"]]
    assert "https://example.com/guide" in urls
    assert all(r["authority"] > 0 for r in response["results"])

    stats = await engine.get_stats()
    assert stats["indexed_pages"] == 3
    assert stats["total_links"] == 5
    assert stats["queue"]["COMPLETED"] == 3
    assert stats["queries_24h"] == 1

    assert (await engine.get_autocomplete("pyt"))[0]["text"] == "python guide"


@pytest.mark.asyncio
async def test_crawl_waits_for_background_indexing(engine):
    result = await engine.crawl("https://example.com/guide")
    assert result.success is True
    page = await ops.get_page(engine.db, result.page_id)
    assert page["is_indexed"] is True


@pytest.mark.asyncio
async def test_reindex_with_requeue(engine):
    result = await engine.crawl("https://example.com/guide")
    await ops.queue_mark_completed(engine.db, await engine.add_to_queue("https://example.com/guide"))

    reindexed = await engine.reindex_page(result.page_id, requeue=True)

    assert reindexed["success"] is True
    entry = await ops.queue_get_entry(engine.db, reindexed["queue_id"])
    assert entry["status"] == "PENDING"
    assert entry["priority"] == REINDEX_PRIORITY
    assert (await engine.search("guide"))["results"] == []

    await engine.process_queue()
    assert (await engine.search("crawling"))["total"] == 1


@pytest.mark.asyncio
async def test_reindex_unknown_page(engine):
    assert (await engine.reindex_page(999))["success"] is False
