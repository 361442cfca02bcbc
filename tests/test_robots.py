import asyncio
import time

import pytest
from unittest.mock import AsyncMock, patch

from src.minisearch import db_operations as ops
from src.minisearch.robots import PolitenessGate, RobotsRules, default_rules, is_allowed, parse_robots_txt

ROBOTS = """
# comment line
User-agent: OtherBot
Disallow: /

User-agent: *
Disallow: /private
Disallow:
Allow: /private/public
Crawl-delay: 2

User-agent: TestBot
Disallow: /tmp
"""


class TestParseRobots:
    def test_collects_groups_for_wildcard_and_our_agent(self):
        rules = parse_robots_txt(ROBOTS, "TestBot/1.0")
        assert rules.disallowed == ["/private", "/tmp"]
        assert rules.allowed == ["/private/public"]
        assert rules.crawl_delay == 2

    def test_other_agents_ignored(self):
        rules = parse_robots_txt("User-agent: OtherBot\nDisallow: /\n", "TestBot/1.0")
        assert rules.disallowed == []

    def test_invalid_crawl_delay(self):
        rules = parse_robots_txt("User-agent: *\nCrawl-delay: soon\n", "TestBot/1.0")
        assert rules.crawl_delay == 0

    def test_consecutive_user_agents_share_group(self):
        rules = parse_robots_txt("User-agent: OtherBot\nUser-agent: TestBot\nDisallow: /x\n", "TestBot/1.0")
        assert rules.disallowed == ["/x"]


class TestIsAllowed:
    def test_disallow_prefix(self):
        rules = RobotsRules(disallowed=["/private"])
        assert is_allowed("https://example.com/private/x", rules) is False
        assert is_allowed("https://example.com/public", rules) is True

    def test_longer_allow_overrides(self):
        rules = RobotsRules(disallowed=["/private"], allowed=["/private/public"])
        assert is_allowed("https://example.com/private/public/page", rules) is True
        assert is_allowed("https://example.com/private/secret", rules) is False

    def test_query_string_is_matched(self):
        rules = RobotsRules(disallowed=["?session="])
        assert is_allowed("https://example.com/a?session=1", rules) is False

    def test_default_rules_allow_everything(self):
        rules = default_rules()
        assert is_allowed("https://example.com/anything", rules) is True
        assert rules.crawl_delay == 0


class TestPolitenessGate:
    @pytest.mark.asyncio
    async def test_fetches_once_and_persists(self, db, http_config):
        fetch = AsyncMock(return_value="User-agent: *\nDisallow: /private\n")
        gate = PolitenessGate(db, http_config, fetch_robots=fetch)

        assert await gate.is_allowed("https://example.com/private/x") is False
        assert await gate.is_allowed("https://example.com/ok") is True
        assert fetch.await_count == 1
        assert await ops.get_robots_txt(db, "example.com") is not None

        # a fresh gate is served from the table without fetching
        other = PolitenessGate(db, http_config, fetch_robots=fetch)
        rules = await other.get_rules("example.com")
        assert rules.disallowed == ["/private"]
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_failure_fails_open_in_memory_only(self, db, http_config):
        fetch = AsyncMock(return_value=None)
        gate = PolitenessGate(db, http_config, fetch_robots=fetch)

        assert await gate.is_allowed("https://down.example.com/page") is True
        assert await ops.get_robots_txt(db, "down.example.com") is None
        await gate.get_rules("down.example.com")
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_default_fetcher_is_used(self, db, http_config):
        with patch("src.minisearch.robots.fetch_robots_txt", new=AsyncMock(return_value=None)) as mock_fetch:
            gate = PolitenessGate(db, http_config)
            await gate.get_rules("example.net")
        mock_fetch.assert_awaited_once_with("example.net", "TestBot/1.0", 1)

    @pytest.mark.asyncio
    async def test_enforce_delay_spaces_requests(self, db, http_config):
        gate = PolitenessGate(db, http_config, fetch_robots=AsyncMock(return_value=None))
        start = time.monotonic()
        await asyncio.gather(*[gate.enforce_delay("slow.example.com", 0.2) for _ in range(3)])
        assert time.monotonic() - start >= 0.38

    @pytest.mark.asyncio
    async def test_zero_delay_does_not_wait(self, db, http_config):
        gate = PolitenessGate(db, http_config, fetch_robots=AsyncMock(return_value=None))
        start = time.monotonic()
        await asyncio.gather(*[gate.enforce_delay("fast.example.com", 0) for _ in range(5)])
        assert time.monotonic() - start < 0.2
