"""
Queue-driven crawler: claims batches from ``crawl_queue``, fetches through the
politeness gate, stores pages and links and hands pages to the indexer.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Dict, Optional

from . import db_operations as ops
from .config import CrawlLimits, HttpConfig
from .database import Database
from .errors import ContentUnchanged, CrawlSkip, FetchError, ParseError, PersistenceError, RobotsDisallowed
from .fetch import FetchResult, fetch_page
from .hashing import content_hash, content_simhash
from .indexer import Indexer
from .jobs import JobQueue
from .parse import PageContent, extract_content, extract_domain, normalize_url_hardened
from .robots import PolitenessGate, is_allowed

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, HttpConfig], Awaitable[FetchResult]]

# 4xx responses that are usually temporary
RETRYABLE_CLIENT_STATUSES = {408, 420, 423, 429, 451}


def should_retry_status_code(status_code: int) -> bool:
    """0 means connection/timeout failure."""
    if status_code == 0 or 500 <= status_code < 600:
        return True
    return status_code in RETRYABLE_CLIENT_STATUSES


def canonical_url(url: str) -> str:
    """Seed and queued urls get the same normalization as links found on pages."""
    try:
        return normalize_url_hardened(url.strip())
    except ValueError as e:
        raise ParseError(f"Malformed url: {url}") from e


@dataclass
class CrawlResult:
    url: str
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    page_id: Optional[int] = None
    status_code: int = 0
    links_found: int = 0
    error: Optional[str] = None

    @classmethod
    def from_skip(cls, skip: CrawlSkip) -> "CrawlResult":
        return cls(url=skip.url, skipped=True, reason=skip.reason, page_id=skip.page_id)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


class Crawler:
    def __init__(self, db: Database, gate: PolitenessGate, http_config: HttpConfig, limits: CrawlLimits,
                 fetcher: Optional[Fetcher] = None, indexer: Optional[Indexer] = None,
                 index_jobs: Optional[JobQueue] = None):
        self.db = db
        self.gate = gate
        self.http_config = http_config
        self.limits = limits
        self.fetcher = fetcher or fetch_page
        self.indexer = indexer
        self.index_jobs = index_jobs

    async def add_to_queue(self, url: str, priority: int = 5, depth: int = 0, parent_url: Optional[str] = None) -> int:
        url = canonical_url(url)
        queue_id = await ops.queue_upsert(self.db, url, priority, depth, parent_url)
        logger.debug("Queued %s (priority %s, depth %s) as %s", url, priority, depth, queue_id)
        return queue_id

    async def _fetch_and_extract(self, url: str) -> tuple[FetchResult, str, Optional[PageContent]]:
        fetched = await self.fetcher(url, self.http_config)
        digest = content_hash(fetched.body)
        existing = await ops.get_page_by_url(self.db, url)
        if existing and existing["content_hash"] == digest and (existing["is_indexed"] or self.indexer is None):
            await ops.touch_page(self.db, existing["id"])
            raise ContentUnchanged(url, existing["id"])
        return fetched, digest, extract_content(fetched.text, url)

    async def crawl(self, url: str, depth: int = 0) -> CrawlResult:
        """
        Fetch one url and store what it yields. Fetch and parse failures come
        back as an unsuccessful result; storage failures are raised.
        """
        try:
            url = canonical_url(url)
            domain = extract_domain(url)
            if not domain:
                raise ParseError(f"No host in url: {url}")

            rules = await self.gate.get_rules(domain)
            if not is_allowed(url, rules):
                raise RobotsDisallowed(url)
            await self.gate.enforce_delay(domain, rules.crawl_delay)

            fetched, digest, content = await self._fetch_and_extract(url)
        except CrawlSkip as skip:
            logger.info("Skipped %s: %s", url, skip.reason)
            return CrawlResult.from_skip(skip)
        except FetchError as e:
            logger.warning("Fetch failed for %s: %s", url, e)
            return CrawlResult(url=url, error=str(e), status_code=e.status_code)
        except ParseError as e:
            logger.warning("Parse failed for %s: %s", url, e)
            return CrawlResult(url=url, error=str(e))

        try:
            page_id = await ops.upsert_page(self.db, {
                "url": url,
                "domain": domain,
                "content_hash": digest,
                "content_simhash": content_simhash(fetched.text),
                "title": content.title,
                "meta_description": content.meta_description,
                "status_code": fetched.status,
                "content_length": content.text_length,
            })

            if depth < self.limits.max_depth:
                for link in content.links:
                    priority = (self.limits.internal_link_priority if link.link_type == "internal"
                                else self.limits.external_link_priority)
                    await ops.queue_upsert(self.db, link.url, priority, depth + 1, url)
                await ops.save_links(self.db, page_id, [(l.url, l.text, l.link_type) for l in content.links])
        except PersistenceError:
            logger.exception("Failed to store crawl of %s", url)
            raise

        if self.index_jobs is not None and self.indexer is not None:
            self.index_jobs.submit(self.indexer.index_page, page_id, content)
        elif self.indexer is not None:
            await self.indexer.index_page(page_id, content)

        logger.info("Crawled %s -> page %s (%d links)", url, page_id, len(content.links))
        return CrawlResult(url=url, success=True, page_id=page_id, status_code=fetched.status,
                           links_found=len(content.links))

    def next_retry_at(self, retry_count: int, status_code: int, now: Optional[float] = None) -> Optional[float]:
        """When a failed entry may be retried, or None once it is out of retries or not retryable."""
        if retry_count >= self.limits.max_retries or not should_retry_status_code(status_code):
            return None
        delay = self.limits.retry_delay * (self.limits.retry_backoff_factor ** (retry_count - 1))
        return (time.time() if now is None else now) + delay

    async def process_queue(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        batch_size = batch_size or self.limits.max_concurrency
        entries = await ops.queue_claim_batch(self.db, batch_size)
        stats = {"processed": len(entries), "successful": 0, "skipped": 0, "failed": 0}
        if not entries:
            return stats

        sem = asyncio.Semaphore(batch_size)

        async def _task(entry: dict) -> CrawlResult:
            async with sem:
                return await self.crawl(entry["url"], entry["depth"])

        results = await asyncio.gather(*[_task(e) for e in entries], return_exceptions=True)

        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                error, status_code = f"{result.__class__.__name__}: {result}", 0
            elif result.success or result.skipped:
                await ops.queue_mark_completed(self.db, entry["id"])
                stats["skipped" if result.skipped else "successful"] += 1
                continue
            else:
                error, status_code = result.error, result.status_code

            retry_count = entry["retry_count"] + 1
            await ops.queue_mark_failed(self.db, entry["id"], error,
                                        self.next_retry_at(retry_count, status_code))
            stats["failed"] += 1

        logger.info("Processed %(processed)d urls: %(successful)d ok, %(skipped)d skipped, %(failed)d failed", stats)
        return stats

    async def requeue_failed(self) -> int:
        count = await ops.queue_requeue_failed(self.db, self.limits.max_retries)
        if count:
            logger.info("Requeued %d failed urls", count)
        return count

    async def queue_status(self) -> Dict[str, int]:
        return await ops.queue_status_counts(self.db)
