"""
Database operations for the crawl queue, pages, links, the inverted index and
query-time lookups.

Every statement uses ``$n`` placeholders; :mod:`database` adapts them for
SQLite. Where the dialects differ the PostgreSQL branch comes first.
"""
from __future__ import annotations
import json
import time
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .database import Database

# Rows per IN (...) list on SQLite
_SQLITE_IN_CHUNK = 500


def _in_list(db: Database, column: str, values: Sequence, start: int, pg_type: str = "text") -> Tuple[str, list]:
    """Build ``column IN (...)`` for SQLite or ``column = ANY($n)`` for PostgreSQL."""
    if db.is_postgres:
        return f"{column} = ANY(${start}::{pg_type}[])", [list(values)]
    placeholders = ", ".join(f"${start + i}" for i in range(len(values)))
    return f"{column} IN ({placeholders})", list(values)


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def encode_positions(db: Database, positions: List[int]):
    return list(positions) if db.is_postgres else json.dumps(list(positions))


def decode_positions(value) -> List[int]:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def _rowcount(result) -> int:
    """Affected-row count from either driver's execute() result."""
    if isinstance(result, str):
        # asyncpg status string, e.g. "UPDATE 3"
        try:
            return int(result.split()[-1])
        except (ValueError, IndexError):
            return 0
    return max(getattr(result, "rowcount", 0), 0)


# ---------------------------------------------------------------------------
# Crawl queue
# ---------------------------------------------------------------------------

async def queue_upsert(db: Database, url: str, priority: int = 5, depth: int = 0,
                       parent_url: Optional[str] = None) -> int:
    """Insert a url into the queue or lower its priority if it is already there.

    Status, depth and parent are never touched on conflict; ``scheduled_at``
    is reset to now.
    """
    now = time.time()
    least = "LEAST" if db.is_postgres else "MIN"
    query = f"""
    INSERT INTO crawl_queue (url, priority, depth, parent_url, status, scheduled_at, created_at)
    VALUES ($1, $2, $3, $4, 'PENDING', $5, $5)
    ON CONFLICT (url) DO UPDATE SET
        priority = {least}(crawl_queue.priority, excluded.priority),
        scheduled_at = excluded.scheduled_at
    """
    async with db.connection() as conn:
        await conn.execute(query, url, priority, depth, parent_url, now)
        return await conn.fetchval("SELECT id FROM crawl_queue WHERE url = $1", url)


async def queue_claim_batch(db: Database, batch_size: int) -> List[Dict]:
    """Atomically move up to ``batch_size`` PENDING entries to CRAWLING.

    Entries are returned ordered by (priority, scheduled_at). Concurrent
    claimers never receive the same entry.
    """
    now = time.time()
    async with db.connection() as conn:
        if db.is_postgres:
            query = """
            WITH next AS (
                SELECT id FROM crawl_queue
                WHERE status = 'PENDING'
                ORDER BY priority ASC, scheduled_at ASC
                LIMIT $1
                FOR UPDATE SKIP LOCKED
            )
            UPDATE crawl_queue q
            SET status = 'CRAWLING', started_at = $2
            FROM next
            WHERE q.id = next.id
            RETURNING q.id, q.url, q.depth, q.priority, q.scheduled_at, q.retry_count
            """
            async with conn.transaction():
                rows = await conn.fetchall(query, batch_size, now)
        else:
            async with conn.transaction():
                rows = await conn.fetchall(
                    """
                    SELECT id, url, depth, priority, scheduled_at, retry_count
                    FROM crawl_queue
                    WHERE status = 'PENDING'
                    ORDER BY priority ASC, scheduled_at ASC
                    LIMIT $1
                    """,
                    batch_size,
                )
                if rows:
                    clause, params = _in_list(db, "id", [row[0] for row in rows], 2, "bigint")
                    await conn.execute(
                        f"UPDATE crawl_queue SET status = 'CRAWLING', started_at = $1 WHERE {clause}",
                        now, *params,
                    )

    entries = [
        {"id": row[0], "url": row[1], "depth": row[2], "priority": row[3],
         "scheduled_at": row[4], "retry_count": row[5]}
        for row in rows
    ]
    # UPDATE ... RETURNING does not preserve the CTE order
    entries.sort(key=lambda e: (e["priority"], e["scheduled_at"], e["id"]))
    return entries


async def queue_mark_completed(db: Database, queue_id: int):
    async with db.connection() as conn:
        await conn.execute(
            "UPDATE crawl_queue SET status = 'COMPLETED', error_message = NULL, next_retry_at = NULL WHERE id = $1",
            queue_id,
        )


async def queue_mark_failed(db: Database, queue_id: int, error: str, next_retry_at: Optional[float] = None):
    """Mark an entry FAILED, bump its retry count and record when it may be retried."""
    async with db.connection() as conn:
        await conn.execute(
            """
            UPDATE crawl_queue
            SET status = 'FAILED', error_message = $2, retry_count = retry_count + 1, next_retry_at = $3
            WHERE id = $1
            """,
            queue_id, (error or "")[:1000], next_retry_at,
        )


async def queue_get_entry(db: Database, queue_id: int) -> Optional[Dict]:
    async with db.connection() as conn:
        row = await conn.fetchone(
            "SELECT id, url, status, priority, retry_count, next_retry_at, error_message FROM crawl_queue WHERE id = $1",
            queue_id,
        )
    if not row:
        return None
    return {"id": row[0], "url": row[1], "status": row[2], "priority": row[3],
            "retry_count": row[4], "next_retry_at": row[5], "error_message": row[6]}


async def queue_requeue_failed(db: Database, max_retries: int, now: Optional[float] = None) -> int:
    """Put retryable FAILED entries whose backoff has elapsed back to PENDING."""
    now = time.time() if now is None else now
    async with db.connection() as conn:
        result = await conn.execute(
            """
            UPDATE crawl_queue
            SET status = 'PENDING', scheduled_at = $2, started_at = NULL, next_retry_at = NULL
            WHERE status = 'FAILED'
              AND retry_count < $1
              AND next_retry_at IS NOT NULL
              AND next_retry_at <= $2
            """,
            max_retries, now,
        )
    return _rowcount(result)


async def queue_requeue_url(db: Database, url: str, priority: int = 0) -> int:
    """Force a url back to PENDING at the given priority, inserting it if needed."""
    now = time.time()
    async with db.connection() as conn:
        await conn.execute(
            """
            INSERT INTO crawl_queue (url, priority, depth, status, scheduled_at, created_at)
            VALUES ($1, $2, 0, 'PENDING', $3, $3)
            ON CONFLICT (url) DO UPDATE SET
                status = 'PENDING', priority = excluded.priority, scheduled_at = excluded.scheduled_at,
                retry_count = 0, next_retry_at = NULL, error_message = NULL
            """,
            url, priority, now,
        )
        return await conn.fetchval("SELECT id FROM crawl_queue WHERE url = $1", url)


async def queue_status_counts(db: Database) -> Dict[str, int]:
    counts = {"PENDING": 0, "CRAWLING": 0, "COMPLETED": 0, "FAILED": 0}
    async with db.connection() as conn:
        rows = await conn.fetchall("SELECT status, COUNT(*) FROM crawl_queue GROUP BY status")
    for status, count in rows:
        counts[status] = count
    return counts


# ---------------------------------------------------------------------------
# Pages and links
# ---------------------------------------------------------------------------

async def get_page_by_url(db: Database, url: str) -> Optional[Dict]:
    async with db.connection() as conn:
        row = await conn.fetchone(
            "SELECT id, content_hash, is_indexed FROM pages WHERE url = $1", url
        )
    if not row:
        return None
    return {"id": row[0], "content_hash": row[1], "is_indexed": bool(row[2])}


async def get_page(db: Database, page_id: int) -> Optional[Dict]:
    async with db.connection() as conn:
        row = await conn.fetchone(
            """
            SELECT id, url, domain, title, meta_description, is_indexed, authority_score, content_hash
            FROM pages WHERE id = $1
            """,
            page_id,
        )
    if not row:
        return None
    return {"id": row[0], "url": row[1], "domain": row[2], "title": row[3],
            "meta_description": row[4], "is_indexed": bool(row[5]),
            "authority_score": row[6], "content_hash": row[7]}


async def upsert_page(db: Database, page: Dict) -> int:
    """Insert or update a page by url and resolve links already pointing at it.

    A changed content hash clears ``is_indexed`` until the indexer runs again.
    """
    now = time.time()
    async with db.connection() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO pages (url, domain, content_hash, content_simhash, title, meta_description,
                                   status_code, content_length, is_indexed, created_at, updated_at, last_crawled_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, FALSE, $9, $9, $9)
                ON CONFLICT (url) DO UPDATE SET
                    domain = excluded.domain,
                    is_indexed = CASE WHEN pages.content_hash = excluded.content_hash
                                      THEN pages.is_indexed ELSE FALSE END,
                    content_hash = excluded.content_hash,
                    content_simhash = excluded.content_simhash,
                    title = excluded.title,
                    meta_description = excluded.meta_description,
                    status_code = excluded.status_code,
                    content_length = excluded.content_length,
                    updated_at = excluded.updated_at,
                    last_crawled_at = excluded.last_crawled_at
                """,
                page["url"], page["domain"], page.get("content_hash"), page.get("content_simhash"),
                page.get("title"), page.get("meta_description"), page.get("status_code"),
                page.get("content_length", 0), now,
            )
            page_id = await conn.fetchval("SELECT id FROM pages WHERE url = $1", page["url"])
            await conn.execute(
                "UPDATE links SET to_page_id = $1 WHERE to_url = $2 AND to_page_id IS NULL",
                page_id, page["url"],
            )
    return page_id


async def touch_page(db: Database, page_id: int):
    """Record a crawl that found the content unchanged."""
    async with db.connection() as conn:
        await conn.execute("UPDATE pages SET last_crawled_at = $1 WHERE id = $2", time.time(), page_id)


async def save_links(db: Database, from_page_id: int, links: List[Tuple[str, str, str]]) -> int:
    """Persist (to_url, anchor_text, link_type) rows; existing (from, to) pairs are left alone."""
    if not links:
        return 0
    now = time.time()
    query = """
    INSERT INTO links (from_page_id, to_url, to_page_id, anchor_text, link_type, discovered_at)
    VALUES ($1, $2, (SELECT id FROM pages WHERE url = $2), $3, $4, $5)
    ON CONFLICT (from_page_id, to_url) DO NOTHING
    """
    rows = [(from_page_id, to_url, (anchor or "")[:500], link_type, now) for to_url, anchor, link_type in links]
    async with db.connection() as conn:
        async with conn.transaction():
            await conn.executemany(query, rows)
    return len(rows)


async def set_page_indexed(db: Database, page_id: int, indexed: bool):
    async with db.connection() as conn:
        await conn.execute(
            "UPDATE pages SET is_indexed = $1, updated_at = $2 WHERE id = $3",
            indexed, time.time(), page_id,
        )


# ---------------------------------------------------------------------------
# Inverted index, bigrams and document frequency
# ---------------------------------------------------------------------------

async def get_indexed_words(db: Database, page_id: int) -> Set[Tuple[str, str]]:
    """(word, field_type) pairs currently indexed for a page."""
    async with db.connection() as conn:
        rows = await conn.fetchall(
            "SELECT word, field_type FROM inverted_index WHERE page_id = $1", page_id
        )
    return {(row[0], row[1]) for row in rows}


async def upsert_index_rows(db: Database, rows: List[Tuple[str, int, str, int, List[int]]], batch_size: int = 100):
    """Write (word, page_id, field_type, term_frequency, positions) rows, overwriting existing ones."""
    query = """
    INSERT INTO inverted_index (word, page_id, field_type, term_frequency, positions)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (word, page_id, field_type) DO UPDATE SET
        term_frequency = excluded.term_frequency,
        positions = excluded.positions
    """
    async with db.connection() as conn:
        for chunk in _chunks(rows, batch_size):
            params = [(w, pid, field, tf, encode_positions(db, pos)) for w, pid, field, tf, pos in chunk]
            async with conn.transaction():
                await conn.executemany(query, params)


async def delete_index_words(db: Database, page_id: int, field_type: str, words: Sequence[str]):
    if not words:
        return
    async with db.connection() as conn:
        for chunk in _chunks(list(words), _SQLITE_IN_CHUNK):
            clause, params = _in_list(db, "word", chunk, 3)
            await conn.execute(
                f"DELETE FROM inverted_index WHERE page_id = $1 AND field_type = $2 AND {clause}",
                page_id, field_type, *params,
            )


async def upsert_bigrams(db: Database, rows: List[Tuple[str, str, int, int, List[int]]], batch_size: int = 100):
    """Write (word1, word2, page_id, frequency, positions) rows."""
    query = """
    INSERT INTO bigrams (word1, word2, page_id, frequency, positions)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (word1, word2, page_id) DO UPDATE SET
        frequency = excluded.frequency,
        positions = excluded.positions
    """
    async with db.connection() as conn:
        for chunk in _chunks(rows, batch_size):
            params = [(w1, w2, pid, freq, encode_positions(db, pos)) for w1, w2, pid, freq, pos in chunk]
            async with conn.transaction():
                await conn.executemany(query, params)


async def delete_bigrams(db: Database, page_id: int):
    async with db.connection() as conn:
        await conn.execute("DELETE FROM bigrams WHERE page_id = $1", page_id)


async def delete_page_index(db: Database, page_id: int) -> List[str]:
    """Remove every index and bigram row for a page. Returns the words that were indexed."""
    async with db.connection() as conn:
        async with conn.transaction():
            rows = await conn.fetchall(
                "SELECT DISTINCT word FROM inverted_index WHERE page_id = $1", page_id
            )
            await conn.execute("DELETE FROM inverted_index WHERE page_id = $1", page_id)
            await conn.execute("DELETE FROM bigrams WHERE page_id = $1", page_id)
    return [row[0] for row in rows]


async def refresh_document_frequency(db: Database, words: Iterable[str]):
    """Recount distinct pages per word; words no page contains any more are dropped."""
    words = sorted(set(words))
    if not words:
        return
    async with db.connection() as conn:
        for chunk in _chunks(words, _SQLITE_IN_CHUNK):
            clause, params = _in_list(db, "word", chunk, 1)
            rows = await conn.fetchall(
                f"SELECT word, COUNT(DISTINCT page_id) FROM inverted_index WHERE {clause} GROUP BY word",
                *params,
            )
            counts = {row[0]: row[1] for row in rows}
            missing = [w for w in chunk if w not in counts]
            async with conn.transaction():
                if counts:
                    await conn.executemany(
                        """
                        INSERT INTO document_frequency (word, document_count) VALUES ($1, $2)
                        ON CONFLICT (word) DO UPDATE SET document_count = excluded.document_count
                        """,
                        list(counts.items()),
                    )
                if missing:
                    clause, params = _in_list(db, "word", missing, 1)
                    await conn.execute(f"DELETE FROM document_frequency WHERE {clause}", *params)


async def get_document_frequencies(db: Database, words: Sequence[str]) -> Dict[str, int]:
    if not words:
        return {}
    clause, params = _in_list(db, "word", list(words), 1)
    async with db.connection() as conn:
        rows = await conn.fetchall(
            f"SELECT word, document_count FROM document_frequency WHERE {clause}", *params
        )
    return {row[0]: row[1] for row in rows}


async def count_indexed_pages(db: Database) -> int:
    async with db.connection() as conn:
        return await conn.fetchval("SELECT COUNT(*) FROM pages WHERE is_indexed = TRUE") or 0


# ---------------------------------------------------------------------------
# robots.txt
# ---------------------------------------------------------------------------

async def get_robots_txt(db: Database, domain: str, now: Optional[float] = None) -> Optional[Tuple[str, float]]:
    """Return (content, expires_at) for an unexpired robots.txt row."""
    now = time.time() if now is None else now
    async with db.connection() as conn:
        row = await conn.fetchone(
            "SELECT content, expires_at FROM robots_txt WHERE domain = $1 AND expires_at > $2",
            domain, now,
        )
    return (row[0], row[1]) if row else None


async def save_robots_txt(db: Database, domain: str, content: str, fetched_at: float, expires_at: float):
    async with db.connection() as conn:
        await conn.execute(
            """
            INSERT INTO robots_txt (domain, content, fetched_at, expires_at) VALUES ($1, $2, $3, $4)
            ON CONFLICT (domain) DO UPDATE SET
                content = excluded.content, fetched_at = excluded.fetched_at, expires_at = excluded.expires_at
            """,
            domain, content, fetched_at, expires_at,
        )


# ---------------------------------------------------------------------------
# Query-time lookups
# ---------------------------------------------------------------------------

async def get_cached_search(db: Database, query_hash: str, now: Optional[float] = None) -> Optional[str]:
    now = time.time() if now is None else now
    async with db.connection() as conn:
        return await conn.fetchval(
            "SELECT results FROM search_cache WHERE query_hash = $1 AND expires_at > $2",
            query_hash, now,
        )


async def save_cached_search(db: Database, query_hash: str, query_text: str, results: str,
                             result_count: int, expires_at: float):
    async with db.connection() as conn:
        await conn.execute(
            """
            INSERT INTO search_cache (query_hash, query_text, results, result_count, expires_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (query_hash) DO UPDATE SET
                query_text = excluded.query_text, results = excluded.results,
                result_count = excluded.result_count, expires_at = excluded.expires_at
            """,
            query_hash, query_text, results, result_count, expires_at,
        )


async def find_candidates(db: Database, tokens: Sequence[str], min_matches: int, limit: int,
                          field_boosts: Dict[str, float], domain: Optional[str] = None) -> List[Dict]:
    """Indexed pages containing at least ``min_matches`` distinct query tokens.

    Ordered by matched term count, then boosted term frequency, then page id.
    """
    clause, params = _in_list(db, "ii.word", list(tokens), 1)
    n = len(params) + 1
    boost_params = [field_boosts.get(f, 1.0) for f in ("title", "meta", "keywords", "body")]
    weighted = (
        f"SUM(ii.term_frequency * CASE ii.field_type "
        f"WHEN 'title' THEN CAST(${n} AS DOUBLE PRECISION) WHEN 'meta' THEN CAST(${n + 1} AS DOUBLE PRECISION) "
        f"WHEN 'keywords' THEN CAST(${n + 2} AS DOUBLE PRECISION) ELSE CAST(${n + 3} AS DOUBLE PRECISION) END)"
    )
    params.extend(boost_params)
    n += 4
    domain_filter = ""
    if domain:
        domain_filter = f"AND p.domain = ${n}"
        params.append(domain)
        n += 1
    query = f"""
    SELECT p.id, p.url, p.title, p.meta_description, p.domain, p.authority_score,
           COUNT(DISTINCT ii.word) AS matched_terms,
           {weighted} AS weighted_tf
    FROM inverted_index ii
    JOIN pages p ON p.id = ii.page_id
    WHERE {clause} AND p.is_indexed = TRUE {domain_filter}
    GROUP BY p.id, p.url, p.title, p.meta_description, p.domain, p.authority_score
    HAVING COUNT(DISTINCT ii.word) >= ${n}
    ORDER BY matched_terms DESC, weighted_tf DESC, p.id ASC
    LIMIT ${n + 1}
    """
    params.extend([min_matches, limit])
    async with db.connection() as conn:
        rows = await conn.fetchall(query, *params)
    return [
        {"id": row[0], "url": row[1], "title": row[2], "meta_description": row[3], "domain": row[4],
         "authority_score": float(row[5] or 0.0), "matched_terms": row[6], "weighted_tf": float(row[7] or 0.0)}
        for row in rows
    ]


async def get_term_frequencies(db: Database, page_ids: Sequence[int], tokens: Sequence[str]) -> List[Tuple[int, str, str, int]]:
    """(page_id, word, field_type, term_frequency) for the given pages and tokens."""
    if not page_ids or not tokens:
        return []
    page_clause, page_params = _in_list(db, "page_id", list(page_ids), 1, "bigint")
    word_clause, word_params = _in_list(db, "word", list(tokens), 1 + len(page_params))
    async with db.connection() as conn:
        rows = await conn.fetchall(
            f"""
            SELECT page_id, word, field_type, term_frequency
            FROM inverted_index
            WHERE {page_clause} AND {word_clause}
            """,
            *page_params, *word_params,
        )
    return [(row[0], row[1], row[2], row[3]) for row in rows]


async def record_search_query(db: Database, query_text: str, normalized_query: str, result_count: int):
    """Log a query and bump the suggestion rows for each of its prefixes."""
    now = time.time()
    prefixes = [normalized_query[:i] for i in range(2, len(normalized_query) + 1)]
    async with db.connection() as conn:
        async with conn.transaction():
            await conn.execute(
                """
                INSERT INTO search_queries (query_text, normalized_query, result_count, created_at)
                VALUES ($1, $2, $3, $4)
                """,
                query_text, normalized_query, result_count, now,
            )
            if prefixes:
                await conn.executemany(
                    """
                    INSERT INTO query_suggestions (query_prefix, suggestion, frequency, last_searched_at)
                    VALUES ($1, $2, 1, $3)
                    ON CONFLICT (query_prefix, suggestion) DO UPDATE SET
                        frequency = query_suggestions.frequency + 1,
                        last_searched_at = excluded.last_searched_at
                    """,
                    [(prefix, normalized_query, now) for prefix in prefixes],
                )


async def get_suggestions(db: Database, prefix: str, limit: int = 10) -> List[Tuple[str, int]]:
    async with db.connection() as conn:
        rows = await conn.fetchall(
            """
            SELECT suggestion, frequency FROM query_suggestions
            WHERE query_prefix = $1
            ORDER BY frequency DESC, last_searched_at DESC
            LIMIT $2
            """,
            prefix, limit,
        )
    return [(row[0], row[1]) for row in rows]


# ---------------------------------------------------------------------------
# Link graph
# ---------------------------------------------------------------------------

async def load_link_graph(db: Database) -> Tuple[List[int], List[Tuple[int, int]]]:
    """Indexed page ids and every resolved (from_page_id, to_page_id) edge."""
    async with db.connection() as conn:
        page_rows = await conn.fetchall("SELECT id FROM pages WHERE is_indexed = TRUE ORDER BY id")
        edge_rows = await conn.fetchall(
            "SELECT from_page_id, to_page_id FROM links WHERE to_page_id IS NOT NULL"
        )
    return [row[0] for row in page_rows], [(row[0], row[1]) for row in edge_rows]


async def save_authority_scores(db: Database, scores: Dict[int, float]):
    if not scores:
        return
    async with db.connection() as conn:
        async with conn.transaction():
            await conn.executemany(
                "UPDATE pages SET authority_score = $1 WHERE id = $2",
                [(score, page_id) for page_id, score in scores.items()],
            )


async def get_authority_scores(db: Database, page_ids: Sequence[int]) -> Dict[int, float]:
    if not page_ids:
        return {}
    clause, params = _in_list(db, "id", list(page_ids), 1, "bigint")
    async with db.connection() as conn:
        rows = await conn.fetchall(f"SELECT id, authority_score FROM pages WHERE {clause}", *params)
    return {row[0]: float(row[1]) for row in rows}


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

async def get_engine_stats(db: Database, window_seconds: int = 86400) -> Dict[str, int]:
    since = time.time() - window_seconds
    async with db.connection() as conn:
        total_pages = await conn.fetchval("SELECT COUNT(*) FROM pages")
        indexed_pages = await conn.fetchval("SELECT COUNT(*) FROM pages WHERE is_indexed = TRUE")
        total_links = await conn.fetchval("SELECT COUNT(*) FROM links")
        recent_queries = await conn.fetchval(
            "SELECT COUNT(*) FROM search_queries WHERE created_at > $1", since
        )
        pending_urls = await conn.fetchval("SELECT COUNT(*) FROM crawl_queue WHERE status = 'PENDING'")
    return {
        "total_pages": total_pages or 0,
        "indexed_pages": indexed_pages or 0,
        "total_links": total_links or 0,
        "queries_24h": recent_queries or 0,
        "pending_urls": pending_urls or 0,
    }
