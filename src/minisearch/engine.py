"""
Engine wiring: one object that owns the database handle and every pipeline
component, built once at startup.
"""
from __future__ import annotations
import logging
from typing import Dict, List, Optional

from .config import EngineConfig
from .crawler import Crawler, CrawlResult, Fetcher
from .database import Database
from .indexer import Indexer
from .jobs import JobQueue
from .pagerank import AuthorityEngine
from .ranker import Ranker
from .robots import PolitenessGate, RobotsFetcher
from .schema import init_db
from .search import SearchService
from . import db_operations as ops

logger = logging.getLogger(__name__)

# Queue priority used when a page is sent back for re-extraction
REINDEX_PRIORITY = 0


class SearchEngine:
    """
    Usage::

        async with SearchEngine(EngineConfig()) as engine:
            await engine.add_to_queue("https://example.com/")
            await engine.process_queue()
            await engine.calculate_page_rank()
            print(await engine.search("example"))
    """

    def __init__(self, config: Optional[EngineConfig] = None, fetcher: Optional[Fetcher] = None,
                 fetch_robots: Optional[RobotsFetcher] = None):
        self.config = config or EngineConfig()
        self.db = Database(self.config.database)
        self.gate = PolitenessGate(self.db, self.config.http, fetch_robots)
        self.indexer = Indexer(self.db, self.config.indexer)
        self.index_jobs = JobQueue("indexer", self.config.indexer.workers)
        self.crawler = Crawler(
            self.db, self.gate, self.config.http, self.config.limits,
            fetcher=fetcher, indexer=self.indexer, index_jobs=self.index_jobs,
        )
        self.ranker = Ranker(self.db, self.config.ranking)
        self.search_service = SearchService(self.db, self.ranker, self.config.search)
        self.authority = AuthorityEngine(self.db, self.config.ranking)

    async def open(self) -> "SearchEngine":
        await self.db.open()
        await init_db(self.db)
        self.index_jobs.start()
        return self

    async def close(self):
        await self.index_jobs.close()
        await self.db.close()

    async def __aenter__(self) -> "SearchEngine":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # crawling

    async def add_to_queue(self, url: str, priority: int = 5, depth: int = 0, parent_url: Optional[str] = None) -> int:
        return await self.crawler.add_to_queue(url, priority, depth, parent_url)

    async def process_queue(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        stats = await self.crawler.process_queue(batch_size)
        await self.index_jobs.join()
        return stats

    async def crawl(self, url: str, depth: int = 0) -> CrawlResult:
        result = await self.crawler.crawl(url, depth)
        await self.index_jobs.join()
        return result

    async def requeue_failed(self) -> int:
        return await self.crawler.requeue_failed()

    async def queue_status(self) -> Dict[str, int]:
        return await self.crawler.queue_status()

    # indexing and ranking

    async def reindex_page(self, page_id: int, requeue: bool = False) -> dict:
        result = await self.indexer.reindex_page(page_id)
        if result.get("success") and requeue:
            result["queue_id"] = await ops.queue_requeue_url(self.db, result["url"], REINDEX_PRIORITY)
        return result

    async def calculate_page_rank(self, iterations: int = 10) -> None:
        await self.authority.calculate_page_rank(iterations)

    # querying

    async def search(self, query: str, page: int = 1, limit: Optional[int] = None,
                     filters: Optional[dict] = None) -> dict:
        return await self.search_service.search(query, page, limit, filters)

    async def get_autocomplete(self, prefix: str, limit: int = 10) -> List[dict]:
        return await self.search_service.get_autocomplete(prefix, limit)

    async def get_stats(self) -> dict:
        stats = await self.search_service.get_stats()
        stats["queue"] = await self.queue_status()
        return stats
