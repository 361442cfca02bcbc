import pytest
import pytest_asyncio
import os
import sys

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.minisearch.config import (
    HttpConfig, CrawlLimits, IndexerConfig, SearchConfig, RankingConfig, EngineConfig, get_database_config,
)
from src.minisearch.database import Database
from src.minisearch.errors import FetchError
from src.minisearch.fetch import FetchResult
from src.minisearch.schema import init_db


@pytest.fixture
def http_config():
    return HttpConfig(
        user_agent="TestBot/1.0",
        timeout=10,
        robots_timeout=1,
    )


@pytest.fixture
def crawl_limits():
    return CrawlLimits(
        max_depth=2,
        max_concurrency=4,
        max_retries=3,
        retry_delay=60,
        retry_backoff_factor=2.0,
    )


@pytest.fixture
def engine_config(tmp_path, http_config, crawl_limits):
    return EngineConfig(
        database=get_database_config("sqlite", str(tmp_path / "search.db")),
        http=http_config,
        limits=crawl_limits,
        indexer=IndexerConfig(enable_bigrams=True, batch_size=50, workers=1),
        search=SearchConfig(default_limit=10, max_limit=100, cache_ttl=3600),
        ranking=RankingConfig(),
    )


@pytest_asyncio.fixture
async def db(engine_config):
    database = Database(engine_config.database)
    await database.open()
    await init_db(database)
    yield database
    await database.close()


@pytest.fixture
def no_robots():
    async def _fetch(domain, user_agent, timeout):
        return None
    return _fetch


class FakeWeb:
    """Serves canned HTML by url. An int value is returned as that HTTP error; unknown urls are 404s."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requests = []

    async def __call__(self, url, cfg):
        self.requests.append(url)
        if url not in self.pages:
            raise FetchError(f"HTTP 404 for {url}", url=url, status_code=404)
        html = self.pages[url]
        if isinstance(html, int):
            raise FetchError(f"HTTP {html} for {url}", url=url, status_code=html)
        return FetchResult(200, url, {"content-type": "text/html"}, html.encode("utf-8"), html)


@pytest.fixture
def fake_web():
    return FakeWeb()
