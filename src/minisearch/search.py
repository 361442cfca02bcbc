"""
Query service: candidate retrieval, ranking, pagination, result caching,
snippets, autocomplete and query analytics.
"""
from __future__ import annotations
import hashlib
import json
import logging
import math
import re
import time
from typing import Dict, List, Optional

from . import db_operations as ops
from .config import SearchConfig
from .database import Database
from .errors import InvalidQuery, PersistenceError
from .ranker import Ranker
from .tokenizer import normalize_query, tokenize

logger = logging.getLogger(__name__)

SNIPPET_SCAN_OFFSETS = 500
SUPPORTED_FILTERS = ("domain",)


def cache_key(query: str, page: int, limit: int, filters: Optional[dict] = None) -> str:
    key = f"{query}_{page}_{limit}"
    if filters:
        key += "_" + json.dumps(filters, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_snippet(text: str, tokens: List[str], max_length: int = 200) -> str:
    """
    Pick the window of ``max_length`` characters (starting within the first
    500 offsets) that contains the most distinct query tokens, wrap the
    tokens in ``<strong>`` and mark truncated ends with ``...``.
    """
    if not text:
        return ""
    lower = text.lower()
    best_start, best_matches = 0, 0
    for start in range(min(len(text), SNIPPET_SCAN_OFFSETS)):
        window = lower[start:start + max_length]
        matches = sum(1 for token in tokens if token in window)
        if matches > best_matches:
            best_start, best_matches = start, matches

    snippet = text[best_start:best_start + max_length]
    if tokens:
        # one pass so a token inside another token's markup is never re-wrapped
        alternation = "|".join(re.escape(t) for t in sorted(set(tokens), key=len, reverse=True))
        snippet = re.sub(alternation, lambda m: f"<strong>{m.group(0)}</strong>", snippet, flags=re.IGNORECASE)

    if best_start > 0:
        snippet = "..." + snippet
    if best_start + max_length < len(text):
        snippet = snippet + "..."
    return snippet


def query_tokens(query: str) -> List[str]:
    """Distinct searchable tokens of a query, in order of first appearance."""
    tokens = list(dict.fromkeys(tokenize(query)))
    if not tokens:
        raise InvalidQuery(f"no searchable terms in {query!r}")
    return tokens


class SearchService:
    def __init__(self, db: Database, ranker: Ranker, config: SearchConfig):
        self.db = db
        self.ranker = ranker
        self.config = config

    def _clamp_limit(self, limit: Optional[int]) -> int:
        if not limit:
            return self.config.default_limit
        return max(1, min(int(limit), self.config.max_limit))

    @staticmethod
    def _clean_filters(filters: Optional[dict]) -> Dict[str, str]:
        return {k: v for k, v in (filters or {}).items() if k in SUPPORTED_FILTERS and v}

    async def search(self, raw_query: str, page: int = 1, limit: Optional[int] = None,
                     filters: Optional[dict] = None) -> dict:
        query = normalize_query(raw_query)
        limit = self._clamp_limit(limit)
        page = max(1, int(page or 1))
        filters = self._clean_filters(filters)
        key = cache_key(query, page, limit, filters)

        cached = await self._cached_payload(key)
        if cached:
            return {**json.loads(cached), "cached": True}

        try:
            tokens = query_tokens(query)
        except InvalidQuery as e:
            logger.debug("Rejected query %r: %s", raw_query, e)
            return {"success": False, "error": "Invalid query", "results": [], "total": 0}

        min_matches = max(1, math.ceil(len(tokens) * self.config.min_match_ratio))
        candidates = await ops.find_candidates(
            self.db, tokens, min_matches, limit * 2, self.ranker.config.field_boosts, filters.get("domain"),
        )
        ranked = await self.ranker.rank(candidates, tokens)

        offset = (page - 1) * limit
        results = [
            self._format_result(doc, tokens, position)
            for position, doc in enumerate(ranked[offset:offset + limit], start=offset + 1)
        ]
        payload = {
            "success": True,
            "query": query,
            "results": results,
            "total": len(ranked),
            "page": page,
            "limit": limit,
        }
        if filters:
            payload["filters"] = filters

        await self._record_query(raw_query, query, len(results))

        await self._store_payload(key, query, payload)
        return {**payload, "cached": False}

    def _format_result(self, doc: dict, tokens: List[str], position: int) -> dict:
        return {
            "id": doc["id"],
            "title": doc.get("title") or doc["url"],
            "url": doc["url"],
            "snippet": generate_snippet(doc.get("meta_description") or "", tokens, self.config.snippet_length),
            "domain": doc["domain"],
            "rank": position,
            "score": doc["final_score"],
            "authority": doc.get("authority_score", 0.0),
        }

    async def _cached_payload(self, key: str) -> Optional[str]:
        try:
            return await ops.get_cached_search(self.db, key)
        except PersistenceError as e:
            logger.warning("Search cache read failed, treating as a miss: %s", e)
            return None

    async def _store_payload(self, key: str, query: str, payload: dict):
        try:
            await ops.save_cached_search(
                self.db, key, query, json.dumps(payload), len(payload["results"]),
                time.time() + self.config.cache_ttl,
            )
        except PersistenceError as e:
            logger.warning("Could not cache results for %r: %s", query, e)

    async def _record_query(self, raw_query: str, normalized: str, result_count: int):
        try:
            await ops.record_search_query(self.db, raw_query, normalized, result_count)
        except PersistenceError as e:
            logger.debug("Could not record query %r: %s", normalized, e)

    async def get_autocomplete(self, prefix: str, limit: int = 10) -> List[dict]:
        prefix = normalize_query(prefix)
        if len(prefix) < 2:
            return []
        rows = await ops.get_suggestions(self.db, prefix, max(1, min(int(limit), self.config.max_limit)))
        return [{"text": text, "frequency": frequency} for text, frequency in rows]

    async def get_stats(self) -> dict:
        return await ops.get_engine_stats(self.db)
