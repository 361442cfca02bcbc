"""
Robots.txt fetching, parsing and the per-domain politeness gate.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import aiohttp

from . import db_operations as ops
from .config import HttpConfig
from .database import Database

logger = logging.getLogger(__name__)


@dataclass
class RobotsRules:
    disallowed: List[str] = field(default_factory=list)
    allowed: List[str] = field(default_factory=list)
    crawl_delay: int = 0
    expires_at: float = 0.0

    def expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


def default_rules(ttl: float = 3600) -> RobotsRules:
    """Allow everything with no delay (used when robots.txt is unavailable)."""
    return RobotsRules(expires_at=time.time() + ttl)


def _product_token(user_agent: str) -> str:
    return user_agent.split("/", 1)[0].split()[0].lower() if user_agent.strip() else ""


def parse_robots_txt(content: str, user_agent: str = "*", ttl: float = 86400) -> RobotsRules:
    """Collect the rules of every group addressed to ``*`` or to our product token."""
    rules = RobotsRules(expires_at=time.time() + ttl)
    token = _product_token(user_agent)
    applies = False
    previous_was_agent = False

    for raw_line in (content or "").splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            agent = value.lower()
            matches = agent == "*" or (bool(token) and bool(agent) and agent in token)
            # consecutive User-agent lines share one group
            applies = (applies or matches) if previous_was_agent else matches
            previous_was_agent = True
            continue
        previous_was_agent = False

        if not applies:
            continue
        if key == "disallow":
            if value:
                rules.disallowed.append(value)
        elif key == "allow":
            if value:
                rules.allowed.append(value)
        elif key == "crawl-delay":
            try:
                rules.crawl_delay = int(float(value))
            except ValueError:
                logger.warning("[robots.txt] Invalid crawl-delay value %r", value)
                rules.crawl_delay = 0
    return rules


def is_allowed(url: str, rules: RobotsRules) -> bool:
    """
    A url is disallowed when any Disallow value occurs in its path+query,
    unless a longer Allow value occurs there too.
    """
    parts = urlsplit(url)
    target = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
    for disallow in rules.disallowed:
        if disallow in target:
            override = any(allow in target and len(allow) > len(disallow) for allow in rules.allowed)
            if not override:
                return False
    return True


async def fetch_robots_txt(domain: str, user_agent: str, timeout: float = 5) -> Optional[str]:
    """Fetch robots.txt for a domain. Returns None on any failure or non-200 status."""
    robots_url = f"https://{domain}/robots.txt"
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(robots_url, headers={'User-Agent': user_agent}) as response:
                if response.status == 200:
                    return await response.text()
                logger.info("[robots.txt] HTTP %s for %s, assuming crawl allowed", response.status, robots_url)
                return None
    except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
        logger.info("[robots.txt] Error fetching %s: %s", robots_url, e)
        return None


RobotsFetcher = Callable[[str, str, float], Awaitable[Optional[str]]]


class PolitenessGate:
    """
    Two-tier robots.txt cache (process memory in front of the ``robots_txt``
    table) plus per-domain crawl-delay spacing.
    """

    def __init__(self, db: Database, http_config: HttpConfig, fetch_robots: Optional[RobotsFetcher] = None):
        self.db = db
        self.config = http_config
        self._fetch_robots = fetch_robots or fetch_robots_txt
        self._rules: Dict[str, RobotsRules] = {}
        self._last_fetch: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get_rules(self, domain: str) -> RobotsRules:
        now = time.time()
        cached = self._rules.get(domain)
        if cached and not cached.expired(now):
            return cached

        stored = await ops.get_robots_txt(self.db, domain, now)
        if stored:
            content, expires_at = stored
            rules = parse_robots_txt(content, self.config.user_agent)
            rules.expires_at = expires_at
            self._rules[domain] = rules
            return rules

        content = await self._fetch_robots(domain, self.config.user_agent, self.config.robots_timeout)
        if content is None:
            # fail open; only remembered in memory so a later fetch can succeed
            rules = default_rules(self.config.robots_failure_ttl)
            self._rules[domain] = rules
            return rules

        rules = parse_robots_txt(content, self.config.user_agent, self.config.robots_ttl)
        await ops.save_robots_txt(self.db, domain, content, now, rules.expires_at)
        self._rules[domain] = rules
        logger.debug("[robots.txt] Cached rules for %s (%d disallow, delay %ss)",
                     domain, len(rules.disallowed), rules.crawl_delay)
        return rules

    async def is_allowed(self, url: str) -> bool:
        domain = (urlsplit(url).hostname or "").lower()
        rules = await self.get_rules(domain)
        return is_allowed(url, rules)

    def _lock_for(self, domain: str) -> asyncio.Lock:
        lock = self._locks.get(domain)
        if lock is None:
            lock = self._locks[domain] = asyncio.Lock()
        return lock

    async def enforce_delay(self, domain: str, crawl_delay: float):
        """Wait until at least ``crawl_delay`` seconds have passed since the last fetch on this domain."""
        async with self._lock_for(domain):
            if crawl_delay > 0:
                last = self._last_fetch.get(domain)
                if last is not None:
                    remaining = crawl_delay - (time.monotonic() - last)
                    if remaining > 0:
                        await asyncio.sleep(remaining)
            self._last_fetch[domain] = time.monotonic()
