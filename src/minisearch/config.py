from __future__ import annotations
import os
from dataclasses import dataclass, field

DATA_DIR = os.getenv("MINISEARCH_DATA", os.path.abspath("./data"))

DEFAULT_USER_AGENT = "MiniSearchBot/1.0 (+https://github.com/user256/minisearch)"


@dataclass
class DatabaseConfig:
    """Configuration for database connections."""
    backend: str = os.getenv("MINISEARCH_DB_BACKEND", "sqlite")  # "sqlite" or "postgresql"

    # SQLite configuration
    sqlite_path: str = os.getenv("MINISEARCH_SQLITE_PATH", os.path.join(DATA_DIR, "search.db"))
    sqlite_timeout: float = float(os.getenv("MINISEARCH_SQLITE_TIMEOUT", "30"))

    # PostgreSQL configuration
    postgres_host: str = os.getenv("MINISEARCH_POSTGRES_HOST", "localhost")
    postgres_port: int = int(os.getenv("MINISEARCH_POSTGRES_PORT", "5432"))
    postgres_database: str = os.getenv("MINISEARCH_POSTGRES_DB", "search_engine")
    postgres_user: str = os.getenv("MINISEARCH_POSTGRES_USER", "postgres")
    postgres_password: str = os.getenv("MINISEARCH_POSTGRES_PASSWORD", "")
    postgres_pool_size: int = int(os.getenv("MINISEARCH_POSTGRES_POOL_SIZE", "20"))
    postgres_max_queries: int = 50000
    postgres_max_inactive_connection_lifetime: float = 300.0


@dataclass
class HttpConfig:
    user_agent: str = os.getenv("MINISEARCH_UA", DEFAULT_USER_AGENT)
    timeout: float = float(os.getenv("MINISEARCH_TIMEOUT", "30"))
    max_redirects: int = int(os.getenv("MINISEARCH_MAX_REDIRECTS", "5"))
    enable_http2: bool = os.getenv("MINISEARCH_HTTP2", "1") == "1"
    # robots.txt fetching and cache TTLs
    robots_timeout: float = float(os.getenv("MINISEARCH_ROBOTS_TIMEOUT", "5"))
    robots_ttl: int = int(os.getenv("MINISEARCH_ROBOTS_TTL", "86400"))  # 24 hours
    robots_failure_ttl: int = int(os.getenv("MINISEARCH_ROBOTS_FAILURE_TTL", "3600"))


@dataclass
class CrawlLimits:
    max_depth: int = int(os.getenv("MINISEARCH_MAX_DEPTH", "5"))
    max_concurrency: int = int(os.getenv("MINISEARCH_CONCURRENCY", "10"))
    internal_link_priority: int = 3
    external_link_priority: int = 7
    # Retry configuration
    max_retries: int = int(os.getenv("MINISEARCH_MAX_RETRIES", "3"))
    retry_delay: float = float(os.getenv("MINISEARCH_RETRY_DELAY", "60"))
    retry_backoff_factor: float = float(os.getenv("MINISEARCH_RETRY_BACKOFF", "2.0"))


@dataclass
class IndexerConfig:
    enable_bigrams: bool = os.getenv("MINISEARCH_BIGRAMS", "0") == "1"
    batch_size: int = int(os.getenv("MINISEARCH_INDEX_BATCH_SIZE", "100"))
    workers: int = int(os.getenv("MINISEARCH_INDEX_WORKERS", "2"))


@dataclass
class SearchConfig:
    default_limit: int = int(os.getenv("MINISEARCH_SEARCH_DEFAULT_LIMIT", "10"))
    max_limit: int = int(os.getenv("MINISEARCH_SEARCH_MAX_LIMIT", "100"))
    cache_ttl: int = int(os.getenv("MINISEARCH_SEARCH_CACHE_TTL", "3600"))
    min_match_ratio: float = 0.7
    snippet_length: int = 200


@dataclass
class RankingConfig:
    tfidf_weight: float = float(os.getenv("MINISEARCH_RANKING_TFIDF_WEIGHT", "0.6"))
    authority_weight: float = float(os.getenv("MINISEARCH_RANKING_AUTHORITY_WEIGHT", "0.3"))
    match_weight: float = float(os.getenv("MINISEARCH_RANKING_MATCH_WEIGHT", "0.1"))
    damping_factor: float = float(os.getenv("MINISEARCH_PAGERANK_DAMPING", "0.85"))
    field_boosts: dict = field(default_factory=lambda: {
        "title": 3.0,
        "meta": 2.0,
        "keywords": 1.5,
        "body": 1.0,
    })


@dataclass
class EngineConfig:
    """Everything the engine needs, resolved once at startup."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    limits: CrawlLimits = field(default_factory=CrawlLimits)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)


def get_database_config(backend: str = None, sqlite_path: str = None) -> DatabaseConfig:
    """Build a database configuration, letting explicit arguments override the environment."""
    config = DatabaseConfig()
    if backend:
        config.backend = backend
    if sqlite_path:
        config.sqlite_path = sqlite_path
    if config.backend == "sqlite":
        directory = os.path.dirname(os.path.abspath(config.sqlite_path))
        os.makedirs(directory, exist_ok=True)
    return config
