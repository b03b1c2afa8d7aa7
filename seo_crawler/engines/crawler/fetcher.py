"""
HTTP fetcher with manual redirect handling.

httpx is never allowed to follow redirects itself: each hop is requested
explicitly so the full chain can be recorded and a redirect into a
robots-disallowed URL can be stopped before it is fetched.
"""

from __future__ import annotations

import asyncio
import ssl
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx
import structlog

from seo_crawler.engines.base import RedirectHop
from seo_crawler.engines.crawler.urls import URLNormalizer

logger = structlog.get_logger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}
PERMANENT_REDIRECTS = {301, 308}
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

FollowCheck = Callable[[str], Awaitable[bool]]


@dataclass
class FetchResult:
    """Outcome of one fetch. Failures are data (status_code 0 + error_kind), never exceptions."""
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    encoding: str | None = None
    elapsed_ms: int = 0
    redirect_chain: list[RedirectHop] = field(default_factory=list)
    error_kind: str | None = None
    error: str | None = None
    stopped_at: str | None = None    # redirect target refused by follow_check
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def failed(self) -> bool:
        return self.status_code == 0

    @property
    def redirected(self) -> bool:
        return bool(self.redirect_chain)

    @property
    def first_status(self) -> int:
        """Status of the first response; what the requested URL itself returned."""
        if self.redirect_chain:
            return self.redirect_chain[0].status_code
        return self.status_code

    @property
    def redirect_type(self) -> str | None:
        if not self.redirect_chain:
            return None
        return "permanent" if self.redirect_chain[0].status_code in PERMANENT_REDIRECTS else "temporary"

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def content_size(self) -> int:
        return len(self.body)

    @property
    def is_html(self) -> bool:
        ctype = (self.content_type or "").lower()
        return any(t in ctype for t in HTML_CONTENT_TYPES)

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding or "utf-8", errors="replace")


def classify_error(exc: BaseException) -> str:
    """Map a transport failure onto a stable error kind."""
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol, ValueError)):
        return "invalid_url"
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, ssl.SSLError):
        return "tls"
    if isinstance(exc, httpx.ConnectError):
        message = str(exc).lower()
        if any(s in message for s in (
            "name or service not known",
            "nodename nor servname",
            "getaddrinfo",
            "name resolution",
            "no address associated",
            "dns",
        )):
            return "dns"
        if "ssl" in message or "certificate" in message or "tls" in message:
            return "tls"
        if "refused" in message:
            return "connection_refused"
        return "connection"
    if isinstance(exc, (httpx.TransportError, OSError)):
        return "connection"
    return "error"


class PageFetcher:
    """
    Fetches a URL, walking redirects hop by hop.

    Each hop runs under asyncio.wait_for on top of the client's own timeouts,
    so a stalled server can never hold a worker indefinitely.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 20.0,
        max_redirects: int = 10,
        max_body_bytes: int = 5 * 1024 * 1024,
    ):
        self.client = client
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.max_body_bytes = max_body_bytes

    async def fetch(self, url: str, follow_check: FollowCheck | None = None) -> FetchResult:
        start = time.perf_counter()
        chain: list[RedirectHop] = []
        seen = {url}
        current = url

        while True:
            try:
                response, body, truncated = await asyncio.wait_for(
                    self._request(current), timeout=self.timeout
                )
            except (httpx.HTTPError, httpx.InvalidURL, ValueError, asyncio.TimeoutError, OSError) as e:
                kind = classify_error(e)
                logger.info("fetch_failed", url=current, error_kind=kind, error=str(e) or type(e).__name__)
                return self._failure(url, current, chain, start, kind, str(e) or type(e).__name__)

            location = response.headers.get("location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                return self._result(url, current, response, body, truncated, chain, start)

            next_url = URLNormalizer.normalize(location, base_url=current)
            if next_url is None:
                logger.info("fetch_failed", url=current, error_kind="invalid_redirect", location=location)
                return self._failure(
                    url, current, chain, start, "invalid_redirect",
                    f"HTTP {response.status_code} redirect to an unusable Location: {location!r}",
                )
            chain.append(RedirectHop(url=current, status_code=response.status_code, location=next_url))

            if next_url in seen:
                return self._failure(url, current, chain, start, "redirect_loop", f"redirect loop at {next_url}")
            if len(chain) > self.max_redirects:
                return self._failure(
                    url, current, chain, start, "too_many_redirects",
                    f"more than {self.max_redirects} redirects",
                )
            if follow_check is not None and not await follow_check(next_url):
                result = self._result(url, current, response, body, truncated, chain, start)
                result.stopped_at = next_url
                return result

            seen.add(next_url)
            current = next_url

    async def _request(self, url: str) -> tuple[httpx.Response, bytes, bool]:
        async with self.client.stream("GET", url, follow_redirects=False) as response:
            if response.status_code in REDIRECT_STATUSES:
                return response, b"", False
            chunks: list[bytes] = []
            size = 0
            truncated = False
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                size += len(chunk)
                if size >= self.max_body_bytes:
                    truncated = True
                    break
            body = b"".join(chunks)[: self.max_body_bytes]
            return response, body, truncated

    def _result(
        self,
        url: str,
        final_url: str,
        response: httpx.Response,
        body: bytes,
        truncated: bool,
        chain: list[RedirectHop],
        start: float,
    ) -> FetchResult:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.debug("fetched", url=url, final_url=final_url, status_code=response.status_code, elapsed_ms=elapsed_ms)
        return FetchResult(
            url=url,
            final_url=final_url,
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            body=body,
            encoding=response.charset_encoding,
            elapsed_ms=elapsed_ms,
            redirect_chain=list(chain),
            truncated=truncated,
        )

    @staticmethod
    def _failure(
        url: str,
        final_url: str,
        chain: list[RedirectHop],
        start: float,
        kind: str,
        message: str,
    ) -> FetchResult:
        return FetchResult(
            url=url,
            final_url=final_url,
            status_code=0,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
            redirect_chain=list(chain),
            error_kind=kind,
            error=message,
        )
