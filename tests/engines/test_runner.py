"""
End-to-end tests for the crawl job runner against an in-memory website.
"""

import httpx
import pytest

from seo_crawler.core.config import get_settings
from seo_crawler.engines.analyzer.engine import PageAnalyzer
from seo_crawler.engines.base import CrawlRecord, JobStatus
from seo_crawler.engines.crawler.control import CrawlControl
from seo_crawler.engines.crawler.fetcher import PageFetcher
from seo_crawler.engines.crawler.runner import CrawlJobRunner
from seo_crawler.services.store import CrawlStore, PersistenceError
from tests.fake_site import SITE, crawl_config, html_page


def _by_url(results) -> dict:
    return {row.url: row for row in results}


@pytest.fixture
def small_site(site):
    site.page(f"{SITE}/", html_page("Home", "Welcome to the home page", ["/about", "/contact"]))
    site.page(f"{SITE}/about", html_page("About", "About us", ["/"]))
    site.page(f"{SITE}/contact", html_page("Contact", "Contact us", ["/about"]))
    return site


class TestCrawlJobRunner:

    @pytest.mark.asyncio
    async def test_crawls_small_site(self, small_site, run_crawl):
        status, job, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        assert job.status == "completed"
        assert {r.url for r in results} == {f"{SITE}/", f"{SITE}/about", f"{SITE}/contact"}
        assert job.pages_crawled == 3
        assert job.pages_total == 3
        assert job.errors_count == 0
        assert job.started_at is not None
        assert job.completed_at is not None
        assert job.duration_ms is not None

        rows = _by_url(results)
        assert rows[f"{SITE}/"].depth == 0
        assert rows[f"{SITE}/"].parent_url is None
        assert rows[f"{SITE}/about"].depth == 1
        assert rows[f"{SITE}/about"].parent_url == f"{SITE}/"
        assert rows[f"{SITE}/about"].title == "About"
        assert rows[f"{SITE}/about"].indexable is True

    @pytest.mark.asyncio
    async def test_each_url_fetched_once(self, small_site, run_crawl):
        await run_crawl(concurrency=3)
        pages = [u for u in small_site.requests if not u.endswith("/robots.txt")]
        assert sorted(pages) == sorted({f"{SITE}/", f"{SITE}/about", f"{SITE}/contact"})

    @pytest.mark.asyncio
    async def test_not_found_page(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/about"]))

        status, job, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        about = _by_url(results)[f"{SITE}/about"]
        assert about.status_code == 404
        assert about.indexable is False
        assert "404" in about.indexability_reason
        assert "client_error" in {i["type"] for i in about.issues}
        assert job.errors_count == 1

    @pytest.mark.asyncio
    async def test_robots_disallowed_url_is_recorded_not_fetched(self, site, run_crawl):
        site.robots_txt = "User-agent: *\nDisallow: /private/\n"
        site.page(f"{SITE}/", html_page("Home", "Home", ["/private/report", "/public"]))
        site.page(f"{SITE}/public", html_page("Public", "Open"))
        site.page(f"{SITE}/private/report", html_page("Secret", "Hidden"))

        _, job, results = await run_crawl()

        blocked = _by_url(results)[f"{SITE}/private/report"]
        assert blocked.status_code is None
        assert blocked.robots_txt_allowed is False
        assert blocked.indexable is False
        assert [i["type"] for i in blocked.issues] == ["blocked_by_robots"]
        assert not site.fetched(f"{SITE}/private/report")
        assert job.pages_crawled == 2

    @pytest.mark.asyncio
    async def test_robots_can_be_ignored(self, site, run_crawl):
        site.robots_txt = "User-agent: *\nDisallow: /\n"
        site.page(f"{SITE}/", html_page("Home", "Home"))

        _, _, results = await run_crawl(respect_robots_txt=False)

        assert results[0].status_code == 200
        assert not site.fetched(f"{SITE}/robots.txt")

    @pytest.mark.asyncio
    async def test_external_links_are_skipped_by_default(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["https://other.org/x"]))
        site.page("https://other.org/x", html_page("Other", "Elsewhere", ["https://other.org/y"]))

        _, _, results = await run_crawl()

        assert [r.url for r in results] == [f"{SITE}/"]
        assert not any(u.startswith("https://other.org") for u in site.requests)

    @pytest.mark.asyncio
    async def test_external_links_are_checked_but_not_followed(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["https://other.org/x"]))
        site.page("https://other.org/x", html_page("Other", "Elsewhere", ["https://other.org/y"]))

        _, _, results = await run_crawl(follow_external_links=True)

        rows = _by_url(results)
        assert rows["https://other.org/x"].status_code == 200
        assert "https://other.org/y" not in rows
        assert not site.fetched("https://other.org/y")

    @pytest.mark.asyncio
    async def test_redirect_chain(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/a"]))
        site.redirect(f"{SITE}/a", "/b")
        site.redirect(f"{SITE}/b", f"{SITE}/c", status=301)
        site.page(f"{SITE}/c", html_page("C", "Final page"))

        _, _, results = await run_crawl()

        rows = _by_url(results)
        source = rows[f"{SITE}/a"]
        assert source.status_code == 301
        assert source.redirect_url == f"{SITE}/c"
        assert source.redirect_type == "permanent"
        assert len(source.redirect_chain) == 2
        assert "redirect_chain" in {i["type"] for i in source.issues}

        target = rows[f"{SITE}/c"]
        assert target.status_code == 200
        assert target.parent_url == f"{SITE}/a"
        assert target.title == "C"
        # Intermediate hops are part of the chain, not separate results
        assert f"{SITE}/b" not in rows

    @pytest.mark.asyncio
    async def test_redirect_target_already_crawled_is_not_duplicated(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/c", "/old"]))
        site.redirect(f"{SITE}/old", "/c")
        site.page(f"{SITE}/c", html_page("C", "Final page"))

        _, _, results = await run_crawl(concurrency=1)

        urls = [r.url for r in results]
        assert urls.count(f"{SITE}/c") == 1
        assert _by_url(results)[f"{SITE}/old"].redirect_url == f"{SITE}/c"

    @pytest.mark.asyncio
    async def test_connection_failure_is_recorded(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/down"]))
        site.fail(f"{SITE}/down")

        status, job, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        down = _by_url(results)[f"{SITE}/down"]
        assert down.status_code == 0
        assert down.error_message.startswith("connection_refused")
        assert [i["type"] for i in down.issues] == ["fetch_failed"]
        assert job.errors_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_content_shares_hash(self, site, run_crawl):
        same = html_page("Same", "Identical body text")
        site.page(f"{SITE}/", html_page("Home", "Home", ["/a", "/b"]))
        site.page(f"{SITE}/a", same)
        site.page(f"{SITE}/b", same)

        _, _, results = await run_crawl()

        rows = _by_url(results)
        assert rows[f"{SITE}/a"].content_hash == rows[f"{SITE}/b"].content_hash
        assert rows[f"{SITE}/a"].content_hash != rows[f"{SITE}/"].content_hash

    @pytest.mark.asyncio
    async def test_max_pages(self, site, run_crawl):
        links = [f"/p{i}" for i in range(10)]
        site.page(f"{SITE}/", html_page("Home", "Home", links))
        for link in links:
            site.page(f"{SITE}{link}", html_page(link, "Page"))

        status, job, results = await run_crawl(max_pages=4, concurrency=3)

        assert status == JobStatus.COMPLETED
        assert len(results) == 4
        assert job.pages_crawled == 4
        fetched = [u for u in site.requests if not u.endswith("/robots.txt")]
        assert len(fetched) == 4

    @pytest.mark.asyncio
    async def test_max_depth(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/a"]))
        site.page(f"{SITE}/a", html_page("A", "A", ["/a/deep"]))
        site.page(f"{SITE}/a/deep", html_page("Deep", "Deep"))

        _, _, results = await run_crawl(max_depth=1)

        assert {r.url for r in results} == {f"{SITE}/", f"{SITE}/a"}
        assert not site.fetched(f"{SITE}/a/deep")

    @pytest.mark.asyncio
    async def test_exclude_patterns(self, small_site, run_crawl):
        _, _, results = await run_crawl(exclude_patterns=["/contact"])
        assert f"{SITE}/contact" not in {r.url for r in results}

    @pytest.mark.asyncio
    async def test_list_mode_does_not_follow_links(self, site, run_crawl):
        site.page(f"{SITE}/a", html_page("A", "A", ["/c"]))
        site.page(f"{SITE}/b", html_page("B", "B", ["/c"]))

        _, job, results = await run_crawl(url_list=[f"{SITE}/a", f"{SITE}/b"])

        assert job.crawl_type == "list"
        assert {r.url for r in results} == {f"{SITE}/a", f"{SITE}/b"}
        assert not site.fetched(f"{SITE}/")
        assert not site.fetched(f"{SITE}/c")

    @pytest.mark.asyncio
    async def test_non_html_resources(self, site, run_crawl):
        site.page(
            f"{SITE}/",
            '<html><head><title>Home</title><link rel="stylesheet" href="/site.css"></head>'
            '<body><img src="/logo.png" alt="Logo"></body></html>',
        )
        site.on(f"{SITE}/logo.png", lambda r: httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"}))
        site.on(f"{SITE}/site.css", lambda r: httpx.Response(200, text="body{}", headers={"content-type": "text/css"}))

        _, _, results = await run_crawl()

        rows = _by_url(results)
        assert rows[f"{SITE}/logo.png"].resource_type == "image"
        assert rows[f"{SITE}/logo.png"].content_hash is not None
        # CSS is off by default
        assert f"{SITE}/site.css" not in rows

    @pytest.mark.asyncio
    async def test_repeated_crawls_agree(self, small_site, run_crawl):
        _, _, first = await run_crawl()
        _, _, second = await run_crawl()

        assert [(r.url, r.status_code, r.depth) for r in first] == [
            (r.url, r.status_code, r.depth) for r in second
        ]

    @pytest.mark.asyncio
    async def test_malformed_redirect_location_is_recorded(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/old", "/about"]))
        site.redirect(f"{SITE}/old", "http://[broken/")
        site.page(f"{SITE}/about", html_page("About", "About us"))

        status, job, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        rows = _by_url(results)
        assert set(rows) == {f"{SITE}/", f"{SITE}/old", f"{SITE}/about"}
        old = rows[f"{SITE}/old"]
        assert old.status_code == 0
        assert old.error_message.startswith("invalid_redirect")
        assert "fetch_failed" in {i["type"] for i in old.issues}
        assert job.errors_count == 1

    @pytest.mark.asyncio
    async def test_unrequestable_links_are_ignored(self, site, run_crawl):
        site.page(f"{SITE}/", html_page("Home", "Home", ["/a\x01b", "/about"]))
        site.page(f"{SITE}/about", html_page("About", "About us"))

        status, _, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        urls = {r.url for r in results}
        assert {f"{SITE}/", f"{SITE}/about"} <= urls
        assert not any("\x01" in url for url in urls)

    @pytest.mark.asyncio
    async def test_unexpected_error_on_one_url_is_recorded(self, small_site, run_crawl, monkeypatch):
        original_fetch = PageFetcher.fetch

        async def flaky_fetch(self, url, follow_check=None):
            if url.endswith("/about"):
                raise RuntimeError("fetcher bug")
            return await original_fetch(self, url, follow_check=follow_check)

        monkeypatch.setattr(PageFetcher, "fetch", flaky_fetch)

        status, job, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        rows = _by_url(results)
        assert set(rows) == {f"{SITE}/", f"{SITE}/about", f"{SITE}/contact"}
        about = rows[f"{SITE}/about"]
        assert about.status_code == 0
        assert about.error_message == "internal_error: RuntimeError: fetcher bug"
        assert job.errors_count == 1

    @pytest.mark.asyncio
    async def test_analysis_failure_is_recorded(self, small_site, run_crawl, monkeypatch):
        def explode(self, html, url, headers=None):
            raise RuntimeError("parser exploded")

        monkeypatch.setattr(PageAnalyzer, "analyze", explode)

        status, _, results = await run_crawl()

        assert status == JobStatus.COMPLETED
        assert len(results) == 1
        home = results[0]
        assert home.status_code == 200
        assert "analysis_failed" in {i["type"] for i in home.issues}


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_crawl(self, small_site, run_crawl):
        control = CrawlControl("pending")

        def cancel_on_home(request):
            control.cancel()
            return httpx.Response(200, html=html_page("Home", "Home", ["/about", "/contact"]))

        small_site.on(f"{SITE}/", cancel_on_home)

        status, job, results = await run_crawl(control=control, concurrency=1)

        assert status == JobStatus.CANCELLED
        assert job.status == "cancelled"
        assert [r.url for r in results] == [f"{SITE}/"]
        assert not small_site.fetched(f"{SITE}/about")
        assert control.snapshot().status == "cancelled"

    @pytest.mark.asyncio
    async def test_job_cancelled_before_start_is_not_claimed(self, store, small_site):
        config = crawl_config()
        job = await store.create_job(config)
        assert await store.finish_job(job.id, JobStatus.CANCELLED)

        runner = CrawlJobRunner(store, get_settings(), transport=small_site.transport)
        status = await runner.run(job.id, config)

        assert status == JobStatus.CANCELLED
        assert small_site.requests == []
        assert (await store.all_results(job.id)) == []


class FailingStore(CrawlStore):

    async def save_result(self, job_id, record: CrawlRecord, pages_total=None) -> bool:
        raise PersistenceError("disk full")


class TestPersistenceFailure:

    @pytest.mark.asyncio
    async def test_store_failure_fails_the_job(self, store, small_site):
        failing = FailingStore(store.session_factory)
        config = crawl_config()
        job = await failing.create_job(config)

        runner = CrawlJobRunner(failing, get_settings(), transport=small_site.transport)
        status = await runner.run(job.id, config)

        assert status == JobStatus.FAILED
        job = await store.get_job(job.id)
        assert job.status == "failed"
        assert "disk full" in job.error_message
