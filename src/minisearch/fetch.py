"""
Page fetching over HTTP/2 with Brotli-capable content decoding.
"""
from __future__ import annotations
import logging
from typing import Dict, NamedTuple

import httpx

from .config import HttpConfig
from .errors import FetchError

logger = logging.getLogger(__name__)


class FetchResult(NamedTuple):
    status: int
    final_url: str
    headers: Dict[str, str]
    body: bytes
    text: str


def _request_headers(cfg: HttpConfig) -> Dict[str, str]:
    return {
        "User-Agent": cfg.user_agent,
        # br is decoded by httpx when the brotli package is installed
        "Accept-Encoding": "gzip, deflate, br",
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }


async def fetch_page(url: str, cfg: HttpConfig) -> FetchResult:
    """
    GET a page, following up to ``cfg.max_redirects`` redirects.

    Raises FetchError on timeout, transport errors, redirect loops and any
    final status >= 400.
    """
    try:
        async with httpx.AsyncClient(
            http2=cfg.enable_http2,
            timeout=httpx.Timeout(cfg.timeout),
            headers=_request_headers(cfg),
            follow_redirects=True,
            max_redirects=cfg.max_redirects,
        ) as client:
            response = await client.get(url)
    except httpx.TimeoutException as e:
        raise FetchError(f"Timeout fetching {url}", url=url) from e
    except httpx.TooManyRedirects as e:
        raise FetchError(f"Too many redirects for {url}", url=url) from e
    except httpx.HTTPError as e:
        raise FetchError(f"Error fetching {url}: {e}", url=url) from e

    if response.status_code >= 400:
        raise FetchError(f"HTTP {response.status_code} for {url}", url=url, status_code=response.status_code)

    body = response.content
    try:
        text = response.text
    except (LookupError, UnicodeDecodeError):
        text = body.decode("utf-8", errors="ignore")
    logger.debug("Fetched %s -> %s (%d bytes)", url, response.status_code, len(body))
    return FetchResult(response.status_code, str(response.url), dict(response.headers), body, text)
