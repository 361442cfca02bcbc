"""
Schema definitions for the search engine database.

Both backends share table and column names. Timestamps are unix epoch seconds
in both. Position lists are ``INTEGER[]`` on PostgreSQL and JSON text on SQLite.
"""

from typing import List

from .database import Database


POSTGRES_SCHEMA = """
-- Crawl queue - one row per discovered URL
CREATE TABLE IF NOT EXISTS crawl_queue (
    id BIGSERIAL PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    depth INTEGER NOT NULL DEFAULT 0,
    parent_url TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN ('PENDING','CRAWLING','COMPLETED','FAILED')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    scheduled_at DOUBLE PRECISION NOT NULL,
    started_at DOUBLE PRECISION,
    next_retry_at DOUBLE PRECISION,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_crawl_queue_claim ON crawl_queue(status, priority, scheduled_at);

-- Pages table - one row per successfully fetched URL
CREATE TABLE IF NOT EXISTS pages (
    id BIGSERIAL PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    domain TEXT NOT NULL,
    content_hash TEXT,
    content_simhash TEXT,
    title TEXT,
    meta_description TEXT,
    status_code INTEGER,
    is_indexed BOOLEAN NOT NULL DEFAULT FALSE,
    authority_score DOUBLE PRECISION NOT NULL DEFAULT 0,
    content_length INTEGER DEFAULT 0,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL,
    last_crawled_at DOUBLE PRECISION
);

CREATE INDEX IF NOT EXISTS idx_pages_domain ON pages(domain);
CREATE INDEX IF NOT EXISTS idx_pages_is_indexed ON pages(is_indexed);

-- Links - to_page_id stays NULL until the target URL has a page row
CREATE TABLE IF NOT EXISTS links (
    id BIGSERIAL PRIMARY KEY,
    from_page_id BIGINT NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    to_url TEXT NOT NULL,
    to_page_id BIGINT REFERENCES pages(id) ON DELETE SET NULL,
    anchor_text TEXT,
    link_type TEXT NOT NULL CHECK (link_type IN ('internal','external')),
    discovered_at DOUBLE PRECISION NOT NULL,
    UNIQUE (from_page_id, to_url)
);

CREATE INDEX IF NOT EXISTS idx_links_to_url ON links(to_url);
CREATE INDEX IF NOT EXISTS idx_links_to_page ON links(to_page_id);

-- Inverted index - one row per (word, page, field)
CREATE TABLE IF NOT EXISTS inverted_index (
    word TEXT NOT NULL,
    page_id BIGINT NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    field_type TEXT NOT NULL CHECK (field_type IN ('title','body','meta','keywords')),
    term_frequency INTEGER NOT NULL,
    positions INTEGER[] NOT NULL DEFAULT '{}',
    PRIMARY KEY (word, page_id, field_type)
);

CREATE INDEX IF NOT EXISTS idx_inverted_index_page ON inverted_index(page_id);

CREATE TABLE IF NOT EXISTS bigrams (
    word1 TEXT NOT NULL,
    word2 TEXT NOT NULL,
    page_id BIGINT NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    frequency INTEGER NOT NULL,
    positions INTEGER[] NOT NULL DEFAULT '{}',
    PRIMARY KEY (word1, word2, page_id)
);

CREATE INDEX IF NOT EXISTS idx_bigrams_page ON bigrams(page_id);

CREATE TABLE IF NOT EXISTS document_frequency (
    word TEXT PRIMARY KEY,
    document_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS robots_txt (
    domain TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    fetched_at DOUBLE PRECISION NOT NULL,
    expires_at DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS search_cache (
    query_hash TEXT PRIMARY KEY,
    query_text TEXT NOT NULL,
    results TEXT NOT NULL,
    result_count INTEGER NOT NULL DEFAULT 0,
    expires_at DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS search_queries (
    id BIGSERIAL PRIMARY KEY,
    query_text TEXT NOT NULL,
    normalized_query TEXT NOT NULL,
    result_count INTEGER NOT NULL DEFAULT 0,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_search_queries_created_at ON search_queries(created_at);

CREATE TABLE IF NOT EXISTS query_suggestions (
    query_prefix TEXT NOT NULL,
    suggestion TEXT NOT NULL,
    frequency INTEGER NOT NULL DEFAULT 1,
    last_searched_at DOUBLE PRECISION NOT NULL,
    PRIMARY KEY (query_prefix, suggestion)
);
"""


SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS crawl_queue (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT UNIQUE NOT NULL,
  priority INTEGER NOT NULL DEFAULT 5,
  depth INTEGER NOT NULL DEFAULT 0,
  parent_url TEXT,
  status TEXT NOT NULL DEFAULT 'PENDING' CHECK (status IN ('PENDING','CRAWLING','COMPLETED','FAILED')),
  retry_count INTEGER NOT NULL DEFAULT 0,
  error_message TEXT,
  scheduled_at REAL NOT NULL,
  started_at REAL,
  next_retry_at REAL,
  created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_crawl_queue_claim ON crawl_queue(status, priority, scheduled_at);

CREATE TABLE IF NOT EXISTS pages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT UNIQUE NOT NULL,
  domain TEXT NOT NULL,
  content_hash TEXT,
  content_simhash TEXT,
  title TEXT,
  meta_description TEXT,
  status_code INTEGER,
  is_indexed BOOLEAN NOT NULL DEFAULT FALSE,
  authority_score REAL NOT NULL DEFAULT 0,
  content_length INTEGER DEFAULT 0,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL,
  last_crawled_at REAL
);
CREATE INDEX IF NOT EXISTS idx_pages_domain ON pages(domain);
CREATE INDEX IF NOT EXISTS idx_pages_is_indexed ON pages(is_indexed);

CREATE TABLE IF NOT EXISTS links (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  from_page_id INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
  to_url TEXT NOT NULL,
  to_page_id INTEGER REFERENCES pages(id) ON DELETE SET NULL,
  anchor_text TEXT,
  link_type TEXT NOT NULL CHECK (link_type IN ('internal','external')),
  discovered_at REAL NOT NULL,
  UNIQUE (from_page_id, to_url)
);
CREATE INDEX IF NOT EXISTS idx_links_to_url ON links(to_url);
CREATE INDEX IF NOT EXISTS idx_links_to_page ON links(to_page_id);

CREATE TABLE IF NOT EXISTS inverted_index (
  word TEXT NOT NULL,
  page_id INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
  field_type TEXT NOT NULL CHECK (field_type IN ('title','body','meta','keywords')),
  term_frequency INTEGER NOT NULL,
  positions TEXT NOT NULL DEFAULT '[]',
  PRIMARY KEY (word, page_id, field_type)
);
CREATE INDEX IF NOT EXISTS idx_inverted_index_page ON inverted_index(page_id);

CREATE TABLE IF NOT EXISTS bigrams (
  word1 TEXT NOT NULL,
  word2 TEXT NOT NULL,
  page_id INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
  frequency INTEGER NOT NULL,
  positions TEXT NOT NULL DEFAULT '[]',
  PRIMARY KEY (word1, word2, page_id)
);
CREATE INDEX IF NOT EXISTS idx_bigrams_page ON bigrams(page_id);

CREATE TABLE IF NOT EXISTS document_frequency (
  word TEXT PRIMARY KEY,
  document_count INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS robots_txt (
  domain TEXT PRIMARY KEY,
  content TEXT NOT NULL,
  fetched_at REAL NOT NULL,
  expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS search_cache (
  query_hash TEXT PRIMARY KEY,
  query_text TEXT NOT NULL,
  results TEXT NOT NULL,
  result_count INTEGER NOT NULL DEFAULT 0,
  expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS search_queries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  query_text TEXT NOT NULL,
  normalized_query TEXT NOT NULL,
  result_count INTEGER NOT NULL DEFAULT 0,
  created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_search_queries_created_at ON search_queries(created_at);

CREATE TABLE IF NOT EXISTS query_suggestions (
  query_prefix TEXT NOT NULL,
  suggestion TEXT NOT NULL,
  frequency INTEGER NOT NULL DEFAULT 1,
  last_searched_at REAL NOT NULL,
  PRIMARY KEY (query_prefix, suggestion)
);
"""


def _split_statements(schema: str) -> List[str]:
    statements = []
    for stmt in schema.split(";"):
        lines = [line for line in stmt.splitlines() if line.strip() and not line.strip().startswith("--")]
        if lines:
            statements.append("\n".join(lines))
    return statements


def get_schema_statements(backend: str) -> List[str]:
    """Return the CREATE statements for a backend, one per list item."""
    if backend == "postgresql":
        return _split_statements(POSTGRES_SCHEMA)
    return _split_statements(SQLITE_SCHEMA)


async def init_db(db: Database):
    """Create every table and index if they do not exist yet."""
    async with db.connection() as conn:
        for stmt in get_schema_statements(db.backend):
            await conn.execute(stmt)
