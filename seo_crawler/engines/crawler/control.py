"""
Per-job control state and the supervised job manager.

Architecture:
- CrawlControl: explicit per-job object holding the cancellation flag and live
  counters. Optionally mirrors progress to Redis and honours a Redis cancel key
  so jobs running in a Celery worker can be cancelled from the API process.
- CrawlJobManager: owns one asyncio.Task per running job. Tasks are supervised
  through a done callback and awaited on shutdown; nothing is fire-and-forget.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable
from uuid import UUID

import structlog
from redis.exceptions import RedisError

from seo_crawler.core.redis import CacheManager
from seo_crawler.engines.base import CrawlConfig, CrawlRecord, JobStatus

if TYPE_CHECKING:
    from seo_crawler.engines.crawler.runner import CrawlJobRunner

logger = structlog.get_logger(__name__)

# Minimum seconds between Redis round-trips for the cancel key
REMOTE_CANCEL_POLL_INTERVAL = 1.0


def cancel_key(job_id: UUID | str) -> str:
    return f"cancel:{job_id}"


def progress_key(job_id: UUID | str) -> str:
    return f"progress:{job_id}"


async def request_remote_cancel(cache: CacheManager, job_id: UUID | str, ttl: int = 86400) -> None:
    """Ask whichever process runs the job to stop."""
    await cache.set(cancel_key(job_id), "1", ttl=ttl)


async def read_remote_progress(cache: CacheManager, job_id: UUID | str) -> dict[str, Any] | None:
    data = await cache.get_hash(progress_key(job_id))
    if not data:
        return None
    return {k: json.loads(v) for k, v in data.items()}


@dataclass(frozen=True)
class CrawlProgress:
    job_id: str
    status: str
    pages_crawled: int
    pages_total: int
    records: int
    errors_count: int
    warnings_count: int
    in_flight: int
    current_url: str | None
    elapsed_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CrawlControl:
    """Cancellation flag plus live counters for one job."""

    def __init__(
        self,
        job_id: UUID | str,
        cache: CacheManager | None = None,
        progress_ttl: int = 86400,
    ):
        self.job_id = str(job_id)
        self.cache = cache
        self.progress_ttl = progress_ttl
        self._cancelled = False
        self._lock = threading.Lock()
        self._status = JobStatus.PENDING
        self._pages_crawled = 0
        self._pages_total = 0
        self._records = 0
        self._errors = 0
        self._warnings = 0
        self._in_flight = 0
        self._current_url: str | None = None
        self._started: float | None = None
        self._finished: float | None = None
        self._last_remote_check = 0.0

    # ─────────────────────────────────────────────
    # Cancellation
    # ─────────────────────────────────────────────

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def is_cancelled(self) -> bool:
        """Local flag, falling back to the shared Redis key (polled at most once per second)."""
        if self._cancelled:
            return True
        if self.cache is None:
            return False
        now = time.monotonic()
        if now - self._last_remote_check < REMOTE_CANCEL_POLL_INTERVAL:
            return False
        self._last_remote_check = now
        try:
            if await self.cache.exists(cancel_key(self.job_id)):
                logger.info("remote_cancel_observed", job_id=self.job_id)
                self._cancelled = True
        except RedisError as e:
            logger.warning("remote_cancel_check_failed", job_id=self.job_id, error=str(e))
        return self._cancelled

    # ─────────────────────────────────────────────
    # Counters
    # ─────────────────────────────────────────────

    def mark_running(self) -> None:
        with self._lock:
            self._status = JobStatus.RUNNING
            self._started = time.monotonic()

    def mark_finished(self, status: JobStatus) -> None:
        with self._lock:
            self._status = status
            self._finished = time.monotonic()

    def fetch_started(self, url: str) -> None:
        with self._lock:
            self._in_flight += 1
            self._current_url = url

    def fetch_finished(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    def record_persisted(self, record: CrawlRecord) -> None:
        with self._lock:
            self._records += 1
            if record.fetched:
                self._pages_crawled += 1
            if record.is_error:
                self._errors += 1
            self._warnings += record.warning_count

    def set_discovered(self, total: int) -> None:
        with self._lock:
            self._pages_total = max(self._pages_total, total)

    def snapshot(self) -> CrawlProgress:
        with self._lock:
            if self._started is None:
                elapsed = 0.0
            else:
                elapsed = (self._finished or time.monotonic()) - self._started
            return CrawlProgress(
                job_id=self.job_id,
                status=self._status.value,
                pages_crawled=self._pages_crawled,
                pages_total=self._pages_total,
                records=self._records,
                errors_count=self._errors,
                warnings_count=self._warnings,
                in_flight=self._in_flight,
                current_url=self._current_url,
                elapsed_ms=int(elapsed * 1000),
            )

    async def publish(self) -> None:
        """Mirror the current snapshot to Redis when a cache is wired in."""
        if self.cache is None:
            return
        mapping = {k: json.dumps(v) for k, v in self.snapshot().to_dict().items()}
        try:
            await self.cache.set_hash(progress_key(self.job_id), mapping, ttl=self.progress_ttl)
        except RedisError as e:
            logger.warning("progress_publish_failed", job_id=self.job_id, error=str(e))


# ─────────────────────────────────────────────
# Job manager
# ─────────────────────────────────────────────

@dataclass
class CrawlHandle:
    job_id: str
    control: CrawlControl
    task: asyncio.Task


class CrawlJobManager:
    """Starts, tracks, cancels and awaits crawl jobs running in this process."""

    def __init__(
        self,
        runner_factory: Callable[[], "CrawlJobRunner"],
        cache: CacheManager | None = None,
        progress_ttl: int = 86400,
    ):
        self.runner_factory = runner_factory
        self.cache = cache
        self.progress_ttl = progress_ttl
        self._handles: dict[str, CrawlHandle] = {}

    def start(self, job_id: UUID | str, config: CrawlConfig) -> CrawlHandle:
        key = str(job_id)
        existing = self._handles.get(key)
        if existing is not None and not existing.task.done():
            return existing

        control = CrawlControl(key, cache=self.cache, progress_ttl=self.progress_ttl)
        runner = self.runner_factory()
        task = asyncio.create_task(runner.run(UUID(key), config, control), name=f"crawl-{key}")
        handle = CrawlHandle(job_id=key, control=control, task=task)
        self._handles[key] = handle
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        logger.info("crawl_job_started", job_id=key, target_url=config.target_url)
        return handle

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        handle = self._handles.get(key)
        if handle is not None and handle.task is task:
            del self._handles[key]
        if task.cancelled():
            logger.warning("crawl_job_task_cancelled", job_id=key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("crawl_job_task_crashed", job_id=key, error=str(exc), exc_info=exc)
        else:
            logger.info("crawl_job_task_finished", job_id=key, status=getattr(task.result(), "value", None))

    def cancel(self, job_id: UUID | str) -> bool:
        """Set the cancellation flag. Returns False when the job is not running here."""
        handle = self._handles.get(str(job_id))
        if handle is None:
            return False
        handle.control.cancel()
        logger.info("crawl_job_cancel_requested", job_id=str(job_id))
        return True

    def is_running(self, job_id: UUID | str) -> bool:
        return str(job_id) in self._handles

    def progress(self, job_id: UUID | str) -> CrawlProgress | None:
        handle = self._handles.get(str(job_id))
        return handle.control.snapshot() if handle else None

    @property
    def running_count(self) -> int:
        return len(self._handles)

    async def wait(self, job_id: UUID | str, timeout: float | None = None) -> JobStatus | None:
        """
        Wait for a job's runner to finish without cancelling it.
        None when the job is not running here or the timeout elapsed first.
        """
        handle = self._handles.get(str(job_id))
        if handle is None:
            return None
        done, _ = await asyncio.wait({handle.task}, timeout=timeout)
        if not done:
            return None
        task = handle.task
        if task.cancelled() or task.exception() is not None:
            return JobStatus.FAILED
        return task.result()

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel every running job and wait for the runners to write their terminal status."""
        handles = list(self._handles.values())
        if not handles:
            return
        logger.info("crawl_manager_shutdown", running=len(handles))
        for handle in handles:
            handle.control.cancel()
        tasks = [h.task for h in handles]
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
