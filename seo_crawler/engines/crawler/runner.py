"""
Crawl Job Runner - drives one crawl job from claim to terminal status.

Flow:
1. Claim the job (pending -> running); bail out if it was cancelled first
2. Build the per-job client, robots resolver, throttle, frontier, analyzer, classifier
3. Resolve the seed host's robots policy and seed the frontier
4. Run a bounded pool of workers over the shared frontier:
   cancelled? -> dequeue -> reserve record slot -> robots -> politeness delay
   -> cancelled? -> fetch -> analyze (thread) -> classify -> persist -> expand links
5. Write the terminal status: completed, cancelled, or failed on PersistenceError

Per-page failures are recorded as results and never abort the job.
"""

from __future__ import annotations

import asyncio
import time
import uuid

import httpx
import structlog

from seo_crawler.core.config import Settings, get_settings
from seo_crawler.core.rule_engine import RuleSet
from seo_crawler.engines.analyzer.engine import (
    PageAnalysis,
    PageAnalyzer,
    content_hash_for_bytes,
    evaluate_indexability,
)
from seo_crawler.engines.base import CrawlConfig, CrawlRecord, JobStatus, ResourceType
from seo_crawler.engines.crawler.control import CrawlControl
from seo_crawler.engines.crawler.fetcher import FetchResult, PageFetcher
from seo_crawler.engines.crawler.frontier import FrontierEntry, URLFrontier
from seo_crawler.engines.crawler.robots import RobotsResolver
from seo_crawler.engines.crawler.throttle import PolitenessThrottle
from seo_crawler.engines.crawler.urls import SiteScope, URLNormalizer, host_of
from seo_crawler.engines.issues.engine import IssueClassifier, analysis_failed_issue
from seo_crawler.services.store import CrawlStore, PersistenceError

logger = structlog.get_logger(__name__)

# Minimum seconds between progress mirrors to Redis
PUBLISH_INTERVAL = 1.0
PROGRESS_LOG_EVERY = 50


class CrawlJobRunner:
    """
    Stateless entry point; all per-job state lives in a _JobCrawl instance.
    A transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(
        self,
        store: CrawlStore,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rules: RuleSet | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.transport = transport
        self.rules = rules

    async def run(
        self,
        job_id: uuid.UUID,
        config: CrawlConfig,
        control: CrawlControl | None = None,
    ) -> JobStatus:
        control = control or CrawlControl(job_id)
        log = logger.bind(job_id=str(job_id))

        if not await self.store.claim_job(job_id):
            job = await self.store.get_job(job_id)
            status = JobStatus(job.status) if job else JobStatus.FAILED
            log.info("crawl_job_not_claimed", status=status.value)
            control.mark_finished(status)
            return status

        control.mark_running()
        await control.publish()
        start = time.monotonic()
        log.info(
            "crawl_job_running",
            target_url=config.target_url,
            crawl_type=config.crawl_type,
            max_pages=config.max_pages,
            concurrency=config.concurrency,
        )

        crawl: _JobCrawl | None = None
        try:
            async with self._build_client(config) as client:
                crawl = _JobCrawl(self, job_id, config, control, client)
                status = await crawl.execute()
        except PersistenceError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            log.error("crawl_job_persistence_failed", error=str(e), duration_ms=duration_ms)
            return await self._fail(job_id, control, duration_ms, str(e))
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            log.exception("crawl_job_crashed", error=str(e))
            await self._fail(job_id, control, duration_ms, f"{type(e).__name__}: {e}")
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        pages_total = crawl.frontier.discovered if crawl else None
        try:
            won = await self.store.finish_job(job_id, status, duration_ms=duration_ms, pages_total=pages_total)
        except PersistenceError as e:
            log.error("crawl_job_finish_failed", error=str(e))
            return await self._fail(job_id, control, duration_ms, str(e))

        if not won:
            job = await self.store.get_job(job_id)
            if job is not None:
                status = JobStatus(job.status)
        control.mark_finished(status)
        await control.publish()

        snapshot = control.snapshot()
        log.info(
            "crawl_job_done",
            status=status.value,
            pages_crawled=snapshot.pages_crawled,
            errors=snapshot.errors_count,
            duration_ms=duration_ms,
        )
        return status

    async def _fail(self, job_id: uuid.UUID, control: CrawlControl, duration_ms: int, message: str) -> JobStatus:
        control.mark_finished(JobStatus.FAILED)
        try:
            await self.store.finish_job(job_id, JobStatus.FAILED, duration_ms=duration_ms, error_message=message)
        except PersistenceError as e:
            logger.error("crawl_job_fail_write_failed", job_id=str(job_id), error=str(e))
        await control.publish()
        return JobStatus.FAILED

    def _build_client(self, config: CrawlConfig) -> httpx.AsyncClient:
        user_agent = config.custom_user_agent or self.settings.CRAWLER_USER_AGENT
        headers = {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        return httpx.AsyncClient(
            headers=headers,
            follow_redirects=False,
            verify=self.settings.CRAWLER_VERIFY_TLS,
            timeout=httpx.Timeout(self.settings.CRAWLER_REQUEST_TIMEOUT),
            limits=httpx.Limits(max_connections=config.concurrency + 5, max_keepalive_connections=20),
            transport=self.transport,
        )


class _JobCrawl:
    """Mutable state for one running job. Lives only inside CrawlJobRunner.run()."""

    def __init__(
        self,
        runner: CrawlJobRunner,
        job_id: uuid.UUID,
        config: CrawlConfig,
        control: CrawlControl,
        client: httpx.AsyncClient,
    ):
        settings = runner.settings
        self.store = runner.store
        self.job_id = job_id
        self.config = config
        self.control = control
        self.log = logger.bind(job_id=str(job_id))
        self.list_mode = bool(config.url_list)

        self.scope = SiteScope(config.target_url, follow_subdomains=config.follow_subdomains)
        self.robots = RobotsResolver(
            client,
            user_agent=config.custom_user_agent or settings.CRAWLER_USER_AGENT,
            respect_robots=config.respect_robots_txt,
            override=config.custom_robots_txt,
            override_host=self.scope.seed_host,
            timeout=settings.CRAWLER_ROBOTS_TIMEOUT,
        )
        self.fetcher = PageFetcher(
            client,
            timeout=settings.CRAWLER_REQUEST_TIMEOUT,
            max_redirects=settings.CRAWLER_MAX_REDIRECTS,
            max_body_bytes=settings.CRAWLER_MAX_BODY_BYTES,
        )
        self.throttle = PolitenessThrottle(config.crawl_delay_ms, settings.CRAWLER_MAX_CRAWL_DELAY_MS)
        self.frontier = URLFrontier(
            self.scope,
            max_depth=config.max_depth,
            include_patterns=config.include_patterns,
            exclude_patterns=config.exclude_patterns,
            follow_external_links=config.follow_external_links,
        )
        self.analyzer = PageAnalyzer(config, self.scope)
        self.classifier = IssueClassifier(runner.rules, check_canonical=config.check_canonical)
        self.workers = max(1, min(config.concurrency, settings.CRAWLER_MAX_CONCURRENCY))

        self.reserved = 0
        self.in_flight = 0
        self.stopping = False
        self.cancel_observed = False
        self.wakeup = asyncio.Event()
        self._last_publish = 0.0

    # ─────────────────────────────────────────────
    # Orchestration
    # ─────────────────────────────────────────────

    async def execute(self) -> JobStatus:
        await self.robots.policy_for(self.config.target_url)

        if self.list_mode:
            for url in self.config.url_list or []:
                self.frontier.seed(url, expand=False)
        else:
            self.frontier.seed(self.config.target_url)
        self.control.set_discovered(self.frontier.discovered)

        tasks = [asyncio.create_task(self._worker(i), name=f"crawl-worker-{i}") for i in range(self.workers)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            self.stopping = True
            self._wake()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if self.cancel_observed or self.control.cancelled:
            return JobStatus.CANCELLED
        return JobStatus.COMPLETED

    async def _worker(self, index: int) -> None:
        while not self.stopping:
            if await self.control.is_cancelled():
                self._observe_cancel()
                return

            entry = self.frontier.dequeue()
            if entry is None:
                if self.in_flight == 0:
                    self._wake()
                    return
                self.wakeup.clear()
                await self.wakeup.wait()
                continue

            if not self._reserve_slot():
                self.frontier.cap()
                self._wake()
                return

            self.in_flight += 1
            try:
                await self._process(entry)
            except PersistenceError:
                raise
            except Exception as e:
                await self._record_crash(entry, e)
            finally:
                self.in_flight -= 1
                self._wake()

    def _wake(self) -> None:
        self.wakeup.set()

    def _observe_cancel(self) -> None:
        if not self.cancel_observed:
            self.log.info("crawl_job_cancel_observed")
        self.cancel_observed = True
        self.stopping = True
        self._wake()

    def _reserve_slot(self) -> bool:
        if self.reserved >= self.config.max_pages:
            return False
        self.reserved += 1
        return True

    def _release_slot(self) -> None:
        self.reserved = max(0, self.reserved - 1)

    # ─────────────────────────────────────────────
    # Per-URL pipeline
    # ─────────────────────────────────────────────

    async def _process(self, entry: FrontierEntry) -> None:
        policy = await self.robots.policy_for(entry.url)
        if not policy.allowed(entry.url):
            self.log.debug("robots_disallowed", url=entry.url)
            await self._persist(self._blocked_record(entry))
            return

        await self.throttle.wait(host_of(entry.url), policy.crawl_delay)

        if await self.control.is_cancelled():
            self._release_slot()
            self._observe_cancel()
            return

        self.control.fetch_started(entry.url)
        try:
            result = await self.fetcher.fetch(entry.url, follow_check=self._follow_allowed)
        finally:
            self.control.fetch_finished()

        if not result.redirected:
            record, analysis = await self._build_record(
                entry.url, entry.parent_url, entry.depth, entry.resource_type, result
            )
            if await self._persist(record):
                self._expand(entry, entry.url, entry.depth, analysis)
            return

        await self._persist(self._redirect_source_record(entry, result))
        if result.failed or result.stopped_at:
            return

        # Terminal URL of the redirect chain, recorded from the response already in hand
        final_url = result.final_url
        child_depth = entry.depth + 1
        resource_type = URLNormalizer.resource_type(final_url) or entry.resource_type
        if not self.frontier.claim(final_url, child_depth):
            return
        if not self._reserve_slot():
            self.frontier.cap()
            return
        record, analysis = await self._build_record(final_url, entry.url, child_depth, resource_type, result)
        if await self._persist(record) and self.scope.is_internal(final_url):
            self._expand(entry, final_url, child_depth, analysis)

    async def _record_crash(self, entry: FrontierEntry, exc: Exception) -> None:
        """A bug on one URL becomes an error result for it; the other workers keep going."""
        error = f"{type(exc).__name__}: {exc}"
        self.log.exception("crawl_url_crashed", url=entry.url, error=error)
        indexable, reason = evaluate_indexability(0, robots_txt_allowed=True)
        record = CrawlRecord(
            url=entry.url,
            url_hash=URLNormalizer.url_fingerprint(entry.url),
            parent_url=entry.parent_url,
            depth=entry.depth,
            resource_type=entry.resource_type,
            status_code=0,
            error_message=f"internal_error: {error}",
            indexable=indexable,
            indexability_reason=reason,
        )
        record.issues = self.classifier.classify(record, "internal_error")
        # If the URL was already saved before the crash, its slot stays consumed
        await self._persist(record, release_on_duplicate=False)

    async def _follow_allowed(self, url: str) -> bool:
        return (await self.robots.policy_for(url)).allowed(url)

    def _blocked_record(self, entry: FrontierEntry) -> CrawlRecord:
        indexable, reason = evaluate_indexability(None, robots_txt_allowed=False)
        record = CrawlRecord(
            url=entry.url,
            url_hash=URLNormalizer.url_fingerprint(entry.url),
            parent_url=entry.parent_url,
            depth=entry.depth,
            resource_type=entry.resource_type,
            status_code=None,
            robots_txt_allowed=False,
            indexable=indexable,
            indexability_reason=reason,
        )
        record.issues = self.classifier.classify(record)
        return record

    def _redirect_source_record(self, entry: FrontierEntry, result: FetchResult) -> CrawlRecord:
        status = 0 if result.failed else result.first_status
        redirect_url = None if result.failed else (result.stopped_at or result.final_url)
        indexable, reason = evaluate_indexability(status, robots_txt_allowed=True)
        record = CrawlRecord(
            url=entry.url,
            url_hash=URLNormalizer.url_fingerprint(entry.url),
            parent_url=entry.parent_url,
            depth=entry.depth,
            resource_type=entry.resource_type,
            status_code=status,
            response_time_ms=result.elapsed_ms,
            redirect_url=redirect_url,
            redirect_type=result.redirect_type,
            redirect_chain=result.redirect_chain,
            error_message=self._error_message(result),
            indexable=indexable,
            indexability_reason=reason,
        )
        record.issues = self.classifier.classify(record, result.error_kind)
        return record

    async def _build_record(
        self,
        url: str,
        parent_url: str | None,
        depth: int,
        resource_type: ResourceType,
        result: FetchResult,
    ) -> tuple[CrawlRecord, PageAnalysis | None]:
        fields: dict = {
            "url": url,
            "url_hash": URLNormalizer.url_fingerprint(url),
            "parent_url": parent_url,
            "depth": depth,
            "resource_type": resource_type,
            "status_code": result.status_code,
            "response_time_ms": result.elapsed_ms,
            "error_message": self._error_message(result),
        }
        analysis: PageAnalysis | None = None
        analysis_error: str | None = None

        if not result.failed:
            fields.update(
                content_type=result.content_type,
                content_size=result.content_size,
                x_robots_tag=result.headers.get("x-robots-tag"),
            )
            if result.ok and result.is_html:
                try:
                    analysis = await asyncio.to_thread(
                        self.analyzer.analyze, result.text, url, result.headers
                    )
                except Exception as e:
                    analysis_error = f"{type(e).__name__}: {e}"
                    self.log.warning("analysis_failed", url=url, error=analysis_error)
                else:
                    fields.update(analysis.model_dump())
            elif result.ok:
                fields["content_hash"] = content_hash_for_bytes(result.body)

        indexable, reason = evaluate_indexability(
            result.status_code,
            robots_txt_allowed=True,
            robots_meta=fields.get("robots_meta"),
            x_robots_tag=fields.get("x_robots_tag"),
        )
        fields.update(indexable=indexable, indexability_reason=reason)

        record = CrawlRecord(**fields)
        issues = self.classifier.classify(record, result.error_kind)
        if analysis_error is not None:
            issues.append(analysis_failed_issue(analysis_error))
        record.issues = issues
        return record, analysis

    @staticmethod
    def _error_message(result: FetchResult) -> str | None:
        if not result.failed:
            return None
        return f"{result.error_kind}: {result.error}"

    async def _persist(self, record: CrawlRecord, release_on_duplicate: bool = True) -> bool:
        saved = await self.store.save_result(self.job_id, record, pages_total=self.frontier.discovered)
        if not saved:
            if release_on_duplicate:
                self._release_slot()
            return False

        self.control.record_persisted(record)
        self.control.set_discovered(self.frontier.discovered)
        snapshot = self.control.snapshot()
        if snapshot.records % PROGRESS_LOG_EVERY == 0:
            self.log.info(
                "crawl_progress",
                records=snapshot.records,
                pages_crawled=snapshot.pages_crawled,
                queued=len(self.frontier),
                errors=snapshot.errors_count,
            )
        now = time.monotonic()
        if now - self._last_publish >= PUBLISH_INTERVAL:
            self._last_publish = now
            await self.control.publish()
        return True

    # ─────────────────────────────────────────────
    # Link expansion
    # ─────────────────────────────────────────────

    def _wants(self, resource_type: ResourceType) -> bool:
        if resource_type == ResourceType.IMAGE:
            return self.config.include_images
        if resource_type == ResourceType.CSS:
            return self.config.include_css
        if resource_type == ResourceType.JS:
            return self.config.include_js
        return True

    def _expand(self, entry: FrontierEntry, page_url: str, depth: int, analysis: PageAnalysis | None) -> None:
        if self.list_mode or not entry.expand or analysis is None:
            return
        if entry.resource_type != ResourceType.PAGE:
            return

        child_depth = depth + 1
        links = list(analysis.internal_links)
        if self.config.follow_external_links:
            links.extend(analysis.external_links)

        added = 0
        for link in links:
            resource_type = URLNormalizer.resource_type(link)
            if resource_type is None or not self._wants(resource_type):
                continue
            if self.frontier.enqueue(link, page_url, child_depth, resource_type):
                added += 1
        for link, resource_type in analysis.resource_links:
            if self._wants(resource_type) and self.frontier.enqueue(link, page_url, child_depth, resource_type):
                added += 1

        if added:
            self.control.set_discovered(self.frontier.discovered)
            self._wake()
