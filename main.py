import argparse, asyncio, json, logging, sys
from src.minisearch.config import EngineConfig, HttpConfig, CrawlLimits, IndexerConfig, get_database_config
from src.minisearch.engine import SearchEngine


def build_config(args) -> EngineConfig:
    config = EngineConfig(database=get_database_config(args.db_backend, args.sqlite_path))
    if args.postgres_host:
        config.database.postgres_host = args.postgres_host
    if args.postgres_port:
        config.database.postgres_port = args.postgres_port
    if args.postgres_db:
        config.database.postgres_database = args.postgres_db
    if args.postgres_user:
        config.database.postgres_user = args.postgres_user
    if args.postgres_password:
        config.database.postgres_password = args.postgres_password

    default_http = HttpConfig()
    config.http = HttpConfig(
        user_agent=args.user_agent or default_http.user_agent,
        timeout=args.timeout if args.timeout is not None else default_http.timeout,
        enable_http2=not args.no_http2,
    )
    default_limits = CrawlLimits()
    config.limits = CrawlLimits(
        max_depth=args.max_depth if args.max_depth is not None else default_limits.max_depth,
        max_concurrency=args.concurrency if args.concurrency is not None else default_limits.max_concurrency,
    )
    if args.bigrams:
        config.indexer = IndexerConfig(enable_bigrams=True)
    return config


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


async def run(args) -> int:
    async with SearchEngine(build_config(args)) as engine:
        if args.command == "init":
            print(f"Schema ready ({engine.db.backend})")

        elif args.command == "add":
            for url in args.urls:
                queue_id = await engine.add_to_queue(url, priority=args.priority)
                print(f"Queued {url} (id {queue_id})")

        elif args.command == "process":
            totals = {"processed": 0, "successful": 0, "skipped": 0, "failed": 0}
            for batch in range(args.batches):
                stats = await engine.process_queue(args.batch_size)
                for key in totals:
                    totals[key] += stats[key]
                if not stats["processed"]:
                    break
                if not args.quiet:
                    print(f"Batch {batch + 1}: {stats}")
            print_json(totals)

        elif args.command == "crawl":
            result = await engine.crawl(args.url, depth=args.depth)
            print_json(result.to_dict())
            return 0 if result.success or result.skipped else 1

        elif args.command == "pagerank":
            await engine.calculate_page_rank(args.iterations)
            print(f"Authority scores updated ({args.iterations} iterations)")

        elif args.command == "search":
            filters = {"domain": args.domain} if args.domain else None
            response = await engine.search(args.query, page=args.page, limit=args.limit, filters=filters)
            print_json(response)
            return 0 if response.get("success") else 1

        elif args.command == "suggest":
            print_json(await engine.get_autocomplete(args.prefix, args.limit))

        elif args.command == "reindex":
            result = await engine.reindex_page(args.page_id, requeue=args.requeue)
            print_json(result)
            return 0 if result.get("success") else 1

        elif args.command == "retry":
            count = await engine.requeue_failed()
            print(f"Requeued {count} failed URLs")

        elif args.command == "stats":
            print_json(await engine.get_stats())
    return 0


if __name__ == "__main__":
    p = argparse.ArgumentParser(
        description="Crawl, index and search a small corpus of web pages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s add https://example.com
  %(prog)s process --batches 5
  %(prog)s pagerank
  %(prog)s search "distributed systems" --page 2
  %(prog)s --db-backend postgresql --postgres-db search_engine stats
        """
    )

    # Database configuration
    p.add_argument("--db-backend", choices=["sqlite", "postgresql"], default=None,
                   help="Database backend to use (default: sqlite)")
    p.add_argument("--sqlite-path", type=str, default=None,
                   help="SQLite database file (default: ./data/search.db)")
    p.add_argument("--postgres-host", type=str, default=None, help="PostgreSQL host (default: localhost)")
    p.add_argument("--postgres-port", type=int, default=None, help="PostgreSQL port (default: 5432)")
    p.add_argument("--postgres-db", type=str, default=None, help="PostgreSQL database name (default: search_engine)")
    p.add_argument("--postgres-user", type=str, default=None, help="PostgreSQL username (default: postgres)")
    p.add_argument("--postgres-password", type=str, default=None, help="PostgreSQL password")

    # HTTP and crawl configuration
    p.add_argument("--user-agent", type=str, default=None, help="User agent string for page and robots.txt fetches")
    p.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds (default: 30)")
    p.add_argument("--no-http2", action="store_true", help="Disable HTTP/2")
    p.add_argument("--max-depth", type=int, default=None, help="Maximum crawl depth (default: 5)")
    p.add_argument("--concurrency", type=int, default=None, help="Default batch size / concurrency (default: 10)")
    p.add_argument("--bigrams", action="store_true", help="Also index body bigrams")

    # Output and logging
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    p.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("init", help="Create the database schema")

    add = sub.add_parser("add", help="Add URLs to the crawl queue")
    add.add_argument("urls", nargs="+")
    add.add_argument("--priority", type=int, default=5, help="Lower is more urgent (default: 5)")

    process = sub.add_parser("process", help="Crawl batches from the queue")
    process.add_argument("--batch-size", type=int, default=None)
    process.add_argument("--batches", type=int, default=1, help="Number of batches to run (default: 1)")

    crawl = sub.add_parser("crawl", help="Crawl a single URL now")
    crawl.add_argument("url")
    crawl.add_argument("--depth", type=int, default=0)

    pagerank = sub.add_parser("pagerank", help="Recompute authority scores")
    pagerank.add_argument("--iterations", type=int, default=10)

    search = sub.add_parser("search", help="Run a search query")
    search.add_argument("query")
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--limit", type=int, default=None)
    search.add_argument("--domain", type=str, default=None, help="Only return results from this domain")

    suggest = sub.add_parser("suggest", help="Autocomplete a query prefix")
    suggest.add_argument("prefix")
    suggest.add_argument("--limit", type=int, default=10)

    reindex = sub.add_parser("reindex", help="Clear the index for a page")
    reindex.add_argument("page_id", type=int)
    reindex.add_argument("--requeue", action="store_true", help="Put the page's URL back at the front of the queue")

    sub.add_parser("retry", help="Requeue failed URLs whose backoff has elapsed")
    sub.add_parser("stats", help="Show index and queue statistics")

    args = p.parse_args()

    level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    sys.exit(asyncio.run(run(args)))
