"""
robots.txt parsing and per-host policy resolution.

Parsing and matching are delegated to protego, which follows the de-facto
Google semantics rather than urllib.robotparser's first-match order:
- the most specific User-agent group wins, falling back to '*'
- '*' wildcards and a trailing '$' anchor are supported in path patterns
- the longest matching pattern wins; on a tie Allow beats Disallow
- an empty Disallow allows everything

Resolution fails open: network errors, non-2xx responses and bodies that are
clearly not robots.txt (HTML, binary) all produce an allow-all policy.
"""

from __future__ import annotations

import asyncio
from urllib.parse import urlparse

import httpx
import structlog
from protego import Protego

logger = structlog.get_logger(__name__)


class RobotsPolicy:
    """Allow/deny predicate plus Crawl-delay and Sitemap directives for one host."""

    def __init__(
        self,
        parser: Protego | None = None,
        user_agent: str = "*",
        source: str = "robots.txt",
    ):
        self.parser = parser
        # Groups are matched against the product token only
        self.agent = user_agent.split("/", 1)[0].strip() or "*"
        self.source = source
        self.crawl_delay: float | None = None
        self.sitemaps: list[str] = []
        if parser is not None:
            delay = parser.crawl_delay(self.agent)
            self.crawl_delay = float(delay) if delay is not None else None
            self.sitemaps = list(parser.sitemaps)

    @classmethod
    def allow_all(cls, source: str = "allow_all") -> "RobotsPolicy":
        return cls(source=source)

    @classmethod
    def parse(cls, text: str, user_agent: str, source: str = "robots.txt") -> "RobotsPolicy":
        return cls(Protego.parse(text), user_agent, source=source)

    def allowed(self, url_or_path: str) -> bool:
        if self.parser is None:
            return True
        parsed = urlparse(url_or_path)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return self.parser.can_fetch(path, self.agent)


def _looks_like_robots(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "").lower()
    if "html" in content_type:
        return False
    head = response.content[:512]
    if b"\x00" in head:
        return False
    lowered = head.lstrip().lower()
    return not (lowered.startswith(b"<!doctype") or lowered.startswith(b"<html"))


class RobotsResolver:
    """
    Fetches /robots.txt once per host per job and caches the resulting policy.

    A per-host asyncio.Lock ensures concurrent workers hitting a new host
    trigger exactly one fetch.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str,
        respect_robots: bool = True,
        override: str | None = None,
        override_host: str | None = None,
        timeout: float = 10.0,
    ):
        self.client = client
        self.user_agent = user_agent
        self.respect_robots = respect_robots
        self.override = override
        self.override_host = override_host.lower() if override_host else None
        self.timeout = timeout
        self._policies: dict[str, RobotsPolicy] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def policy_for(self, url: str) -> RobotsPolicy:
        if not self.respect_robots:
            return RobotsPolicy.allow_all(source="disabled")

        parsed = urlparse(url)
        host = parsed.netloc.lower()
        cached = self._policies.get(host)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            cached = self._policies.get(host)
            if cached is not None:
                return cached
            policy = await self._resolve(parsed.scheme or "https", host)
            self._policies[host] = policy
            return policy

    async def allowed(self, url: str) -> bool:
        return (await self.policy_for(url)).allowed(url)

    async def _resolve(self, scheme: str, host: str) -> RobotsPolicy:
        if self.override is not None and host == self.override_host:
            logger.info("robots_override_applied", host=host)
            return RobotsPolicy.parse(self.override, self.user_agent, source="override")

        robots_url = f"{scheme}://{host}/robots.txt"
        try:
            response = await asyncio.wait_for(
                self.client.get(robots_url, follow_redirects=True, timeout=self.timeout),
                timeout=self.timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            logger.info("robots_fetch_failed", host=host, error=str(e) or type(e).__name__)
            return RobotsPolicy.allow_all(source="fetch_failed")

        if not 200 <= response.status_code < 300:
            logger.debug("robots_not_available", host=host, status_code=response.status_code)
            return RobotsPolicy.allow_all(source=f"http_{response.status_code}")

        if not _looks_like_robots(response):
            logger.info("robots_unparsable", host=host)
            return RobotsPolicy.allow_all(source="unparsable")

        policy = RobotsPolicy.parse(response.text, self.user_agent)
        logger.info(
            "robots_loaded",
            host=host,
            crawl_delay=policy.crawl_delay,
            sitemaps=len(policy.sitemaps),
        )
        return policy
