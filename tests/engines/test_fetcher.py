"""
Tests for the page fetcher.
Uses httpx MockTransport to avoid real network calls.
"""

import httpx
import pytest
import pytest_asyncio

from seo_crawler.engines.crawler.fetcher import PageFetcher, classify_error

REDIRECTS = {
    "https://example.com/a": (301, "/b"),
    "https://example.com/b": (302, "https://example.com/c"),
    "https://example.com/loop1": (301, "/loop2"),
    "https://example.com/loop2": (301, "/loop1"),
    "https://example.com/temp": (307, "/c"),
    "https://example.com/bad-location": (301, "http://[broken/"),
    "https://example.com/to-mail": (302, "mailto:someone@example.com"),
}


def handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url in REDIRECTS:
        status, location = REDIRECTS[url]
        return httpx.Response(status, headers={"location": location})
    if url == "https://example.com/c":
        return httpx.Response(200, html="<html><title>C</title></html>")
    if url == "https://example.com/big":
        return httpx.Response(200, content=b"x" * 5000, headers={"content-type": "text/plain"})
    if url == "https://example.com/down":
        raise httpx.ConnectError("Connection refused", request=request)
    if url == "https://example.com/slow":
        raise httpx.ReadTimeout("timed out", request=request)
    return httpx.Response(404, text="not found")


@pytest_asyncio.fixture
async def client():
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as c:
        yield c


class TestPageFetcher:

    @pytest.mark.asyncio
    async def test_plain_fetch(self, client):
        result = await PageFetcher(client).fetch("https://example.com/c")
        assert result.ok
        assert result.is_html
        assert "<title>C</title>" in result.text
        assert not result.redirected
        assert result.first_status == 200

    @pytest.mark.asyncio
    async def test_redirect_chain_is_recorded(self, client):
        result = await PageFetcher(client).fetch("https://example.com/a")
        assert result.status_code == 200
        assert result.final_url == "https://example.com/c"
        assert [hop.url for hop in result.redirect_chain] == ["https://example.com/a", "https://example.com/b"]
        assert [hop.status_code for hop in result.redirect_chain] == [301, 302]
        assert result.first_status == 301
        assert result.redirect_type == "permanent"

    @pytest.mark.asyncio
    async def test_temporary_redirect(self, client):
        result = await PageFetcher(client).fetch("https://example.com/temp")
        assert result.redirect_type == "temporary"

    @pytest.mark.asyncio
    async def test_redirect_loop(self, client):
        result = await PageFetcher(client).fetch("https://example.com/loop1")
        assert result.failed
        assert result.error_kind == "redirect_loop"
        assert len(result.redirect_chain) == 2

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, client):
        result = await PageFetcher(client, max_redirects=1).fetch("https://example.com/a")
        assert result.failed
        assert result.error_kind == "too_many_redirects"

    @pytest.mark.asyncio
    async def test_follow_check_stops_chain(self, client):
        async def deny_c(url: str) -> bool:
            return not url.endswith("/c")

        result = await PageFetcher(client).fetch("https://example.com/a", follow_check=deny_c)
        assert result.stopped_at == "https://example.com/c"
        assert result.status_code == 302
        assert result.final_url == "https://example.com/b"

    @pytest.mark.asyncio
    async def test_http_errors_are_results(self, client):
        result = await PageFetcher(client).fetch("https://example.com/missing")
        assert result.status_code == 404
        assert not result.failed

    @pytest.mark.asyncio
    async def test_connection_failure(self, client):
        result = await PageFetcher(client).fetch("https://example.com/down")
        assert result.status_code == 0
        assert result.error_kind == "connection_refused"

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        result = await PageFetcher(client).fetch("https://example.com/slow")
        assert result.error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_body_is_capped(self, client):
        result = await PageFetcher(client, max_body_bytes=1000).fetch("https://example.com/big")
        assert result.truncated
        assert result.content_size == 1000

    @pytest.mark.asyncio
    async def test_malformed_location_is_a_failure(self, client):
        result = await PageFetcher(client).fetch("https://example.com/bad-location")
        assert result.failed
        assert result.error_kind == "invalid_redirect"
        assert "http://[broken/" in result.error
        assert not result.redirected

    @pytest.mark.asyncio
    async def test_redirect_to_non_http_scheme(self, client):
        result = await PageFetcher(client).fetch("https://example.com/to-mail")
        assert result.error_kind == "invalid_redirect"

    @pytest.mark.asyncio
    async def test_unrequestable_url_is_a_failure(self, client):
        result = await PageFetcher(client).fetch("https://example.com/a\x01b")
        assert result.status_code == 0
        assert result.error_kind == "invalid_url"


def test_classify_error():
    request = httpx.Request("GET", "https://example.com/")
    assert classify_error(httpx.ConnectError("[Errno -2] Name or service not known", request=request)) == "dns"
    assert classify_error(httpx.ConnectTimeout("timeout", request=request)) == "timeout"
    assert classify_error(httpx.ConnectError("certificate verify failed", request=request)) == "tls"
    assert classify_error(OSError("boom")) == "connection"
    assert classify_error(httpx.InvalidURL("Invalid non-printable ASCII character in URL")) == "invalid_url"
    assert classify_error(ValueError("Invalid IPv6 URL")) == "invalid_url"
    assert classify_error(RuntimeError("?")) == "error"
