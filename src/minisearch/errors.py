"""
Error taxonomy for the crawl, index and query pipeline.
"""
from typing import Optional


class SearchEngineError(Exception):
    """Base class for every error raised by the pipeline."""


class CrawlSkip(SearchEngineError):
    """A url was deliberately not (re)processed. Not a failure."""
    reason = "skipped"

    def __init__(self, url: str, page_id: Optional[int] = None):
        super().__init__(f"{self.reason}: {url}")
        self.url = url
        self.page_id = page_id


class RobotsDisallowed(CrawlSkip):
    reason = "robots.txt disallowed"


class ContentUnchanged(CrawlSkip):
    reason = "content unchanged"


class FetchError(SearchEngineError):
    """Timeout, network failure or an HTTP status >= 400."""

    def __init__(self, message: str, url: str = "", status_code: int = 0):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ParseError(SearchEngineError):
    """Malformed HTML or URL."""


class PersistenceError(SearchEngineError):
    """The backing store rejected or failed a statement."""


class InvalidQuery(SearchEngineError):
    """A query that normalizes to zero tokens."""
