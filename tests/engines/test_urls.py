"""
Tests for URL normalization, classification, site scope and the frontier.
"""

import pytest

from seo_crawler.engines.base import ResourceType
from seo_crawler.engines.crawler.frontier import FrontierState, URLFrontier
from seo_crawler.engines.crawler.urls import (
    SiteScope,
    URLNormalizer,
    registrable_domain,
)


# ─────────────────────────────────────────────
# URL Normalizer Tests
# ─────────────────────────────────────────────

class TestURLNormalizer:

    def test_normalizes_relative_url(self):
        result = URLNormalizer.normalize("/about", "https://example.com/")
        assert result == "https://example.com/about"

    def test_removes_fragment(self):
        result = URLNormalizer.normalize("https://example.com/page#section", "https://example.com")
        assert result == "https://example.com/page"

    def test_removes_utm_params(self):
        result = URLNormalizer.normalize(
            "https://example.com/page?utm_source=google&id=123",
            "https://example.com"
        )
        assert "utm_source" not in result
        assert "id=123" in result

    def test_skips_mailto(self):
        assert URLNormalizer.normalize("mailto:test@example.com", "https://example.com") is None

    def test_skips_javascript_and_fragment_only(self):
        assert URLNormalizer.normalize("javascript:void(0)", "https://example.com") is None
        assert URLNormalizer.normalize("#top", "https://example.com") is None

    def test_normalizes_trailing_slash(self):
        result = URLNormalizer.normalize("https://example.com/page/", "https://example.com")
        assert result == "https://example.com/page"

    def test_root_trailing_slash_preserved(self):
        assert URLNormalizer.normalize("https://example.com/") == "https://example.com/"
        assert URLNormalizer.normalize("https://example.com") == "https://example.com/"

    def test_lowercases_scheme_and_host_but_not_path(self):
        result = URLNormalizer.normalize("HTTPS://Example.COM/About-Us")
        assert result == "https://example.com/About-Us"

    def test_strips_default_port_keeps_others(self):
        assert URLNormalizer.normalize("https://example.com:443/a") == "https://example.com/a"
        assert URLNormalizer.normalize("http://example.com:8080/a") == "http://example.com:8080/a"

    def test_rejects_malformed(self):
        assert URLNormalizer.normalize("http://example.com:notaport/") is None
        assert URLNormalizer.normalize("") is None
        assert URLNormalizer.normalize("http://[broken/") is None

    def test_rejects_control_characters_and_overlong(self):
        assert URLNormalizer.normalize("/a\x01b", "https://example.com/") is None
        assert URLNormalizer.normalize("/a\x7fb", "https://example.com/") is None
        assert URLNormalizer.normalize("/" + "p" * 2100, "https://example.com/") is None
        assert URLNormalizer.normalize("/a b", "https://example.com/") is not None

    def test_idempotent(self):
        once = URLNormalizer.normalize("https://Example.com/a/b/?utm_medium=x&q=1#frag")
        assert URLNormalizer.normalize(once) == once

    def test_fingerprint_consistency(self):
        fp1 = URLNormalizer.url_fingerprint("https://example.com/page")
        fp2 = URLNormalizer.url_fingerprint("https://example.com/page")
        assert fp1 == fp2
        assert len(fp1) == 32

    def test_fingerprint_uniqueness(self):
        fp1 = URLNormalizer.url_fingerprint("https://example.com/page1")
        fp2 = URLNormalizer.url_fingerprint("https://example.com/page2")
        assert fp1 != fp2

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://example.com/", ResourceType.PAGE),
            ("https://example.com/blog/post", ResourceType.PAGE),
            ("https://example.com/index.html", ResourceType.PAGE),
            ("https://example.com/logo.PNG", ResourceType.IMAGE),
            ("https://example.com/static/site.css", ResourceType.CSS),
            ("https://example.com/static/app.js", ResourceType.JS),
            ("https://example.com/doc.pdf", None),
            ("https://example.com/v1.2/page", ResourceType.PAGE),
        ],
    )
    def test_resource_type(self, url, expected):
        assert URLNormalizer.resource_type(url) == expected


# ─────────────────────────────────────────────
# Site Scope Tests
# ─────────────────────────────────────────────

class TestSiteScope:

    def test_same_host_and_www_variant(self):
        scope = SiteScope("https://example.com/")
        assert scope.is_internal("https://example.com/page")
        assert scope.is_internal("https://www.example.com/page")
        assert not scope.is_internal("https://blog.example.com/page")
        assert not scope.is_internal("https://other.com/page")

    def test_follow_subdomains(self):
        scope = SiteScope("https://www.example.co.uk/", follow_subdomains=True)
        assert scope.is_internal("https://shop.example.co.uk/cart")
        assert not scope.is_internal("https://example.com/")

    def test_registrable_domain(self):
        assert registrable_domain("shop.example.co.uk") == "example.co.uk"
        assert registrable_domain("localhost:8000") == "localhost"


# ─────────────────────────────────────────────
# Frontier Tests
# ─────────────────────────────────────────────

class TestURLFrontier:

    def _frontier(self, **kwargs) -> URLFrontier:
        defaults = dict(scope=SiteScope("https://example.com/"), max_depth=2)
        defaults.update(kwargs)
        return URLFrontier(**defaults)

    def test_seed_then_fifo(self):
        frontier = self._frontier()
        assert frontier.seed("https://example.com/")
        assert frontier.state == FrontierState.SEEDED
        assert frontier.enqueue("/a", "https://example.com/", 1) is False  # relative, no base
        assert frontier.enqueue("https://example.com/a", "https://example.com/", 1)
        assert frontier.enqueue("https://example.com/b", "https://example.com/", 1)

        assert frontier.dequeue().url == "https://example.com/"
        assert frontier.dequeue().url == "https://example.com/a"
        assert frontier.dequeue().url == "https://example.com/b"
        assert frontier.dequeue() is None
        assert frontier.state == FrontierState.EMPTY

    def test_duplicates_rejected_after_normalization(self):
        frontier = self._frontier()
        frontier.seed("https://example.com/")
        assert frontier.enqueue("https://example.com/a/", None, 1)
        assert not frontier.enqueue("https://EXAMPLE.com/a#x", None, 1)
        assert not frontier.enqueue("https://example.com/a?utm_source=x", None, 1)
        assert frontier.discovered == 2

    def test_depth_limit(self):
        frontier = self._frontier(max_depth=1)
        assert frontier.enqueue("https://example.com/a", None, 1)
        assert not frontier.enqueue("https://example.com/b", None, 2)

    def test_external_links(self):
        frontier = self._frontier()
        assert not frontier.enqueue("https://other.com/", None, 1)

        following = self._frontier(follow_external_links=True)
        assert following.enqueue("https://other.com/", None, 1)
        entry = following.dequeue()
        assert entry.url == "https://other.com/"
        assert entry.expand is False

    def test_include_and_exclude_patterns(self):
        frontier = self._frontier(include_patterns=[r"/blog/"], exclude_patterns=[r"\?page="])
        assert frontier.enqueue("https://example.com/blog/post", None, 1)
        assert not frontier.enqueue("https://example.com/about", None, 1)
        assert not frontier.enqueue("https://example.com/blog/?page=2", None, 1)

    def test_seed_bypasses_patterns(self):
        frontier = self._frontier(include_patterns=[r"/blog/"])
        assert frontier.seed("https://example.com/")

    def test_claim_marks_visited_without_queueing(self):
        frontier = self._frontier()
        assert frontier.claim("https://example.com/final", 1)
        assert len(frontier) == 0
        assert frontier.is_visited("https://example.com/final/")
        assert not frontier.enqueue("https://example.com/final", None, 1)
        assert not frontier.claim("https://example.com/final", 1)

    def test_cap_drops_queue_and_refuses_more(self):
        frontier = self._frontier()
        frontier.seed("https://example.com/")
        frontier.enqueue("https://example.com/a", None, 1)
        assert frontier.cap() == 2
        assert frontier.state == FrontierState.CAPPED
        assert not frontier.enqueue("https://example.com/b", None, 1)
        assert frontier.dequeue() is None
        assert frontier.state == FrontierState.CAPPED
