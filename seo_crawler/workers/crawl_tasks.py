"""
Crawl Tasks - Celery task definitions for running crawls out of the API process.

Flow:
1. dispatch_due_schedules()  → beat, every minute: creates a pending job per due
                               schedule and enqueues run_crawl_job
2. run_crawl_job()           → claims the job and drives CrawlJobRunner to a
                               terminal status

Error handling:
- Crawl jobs are not retried: a retry could never claim a job that already left pending
- Per-page failures are recorded as results by the runner
- A soft time limit marks the job failed; cancel requests arrive through Redis
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Callable
from uuid import UUID

import httpx
import structlog
from celery.exceptions import SoftTimeLimitExceeded
from kombu.exceptions import OperationalError
from pydantic import ValidationError

from seo_crawler.core.config import get_settings
from seo_crawler.core.database import build_engine, build_session_factory, create_tables
from seo_crawler.core.logging import job_log_context
from seo_crawler.core.redis import CacheManager, new_redis_client
from seo_crawler.engines.base import CrawlConfig, JobStatus
from seo_crawler.engines.crawler.control import CrawlControl
from seo_crawler.engines.crawler.runner import CrawlJobRunner
from seo_crawler.services.scheduling import next_run_after
from seo_crawler.services.store import CrawlStore
from seo_crawler.workers.celery_app import CRAWL_QUEUE, DISPATCH_SCHEDULES_TASK, RUN_CRAWL_TASK, celery_app

logger = structlog.get_logger(__name__)
settings = get_settings()


def run_async(coro):
    """Run an async coroutine in a Celery (sync) task context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def worker_resources() -> AsyncIterator[tuple[CrawlStore, CacheManager | None]]:
    """Engine and Redis client scoped to one task's event loop."""
    engine = build_engine(settings.database_url, settings)
    redis = new_redis_client()
    try:
        if settings.DB_CREATE_TABLES:
            await create_tables(engine)
        yield CrawlStore(build_session_factory(engine)), (CacheManager(redis) if redis is not None else None)
    finally:
        await engine.dispose()
        if redis is not None:
            await redis.aclose()


# ─────────────────────────────────────────────
# Task: Run Crawl Job
# ─────────────────────────────────────────────

async def execute_crawl_job(
    job_id: UUID,
    store: CrawlStore,
    cache: CacheManager | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> JobStatus | None:
    """Load the job's config snapshot and run it. None when the job no longer exists."""
    job = await store.get_job(job_id)
    if job is None:
        logger.warning("crawl_job_missing", job_id=str(job_id))
        return None

    config = CrawlConfig.model_validate(job.config)
    control = CrawlControl(job_id, cache=cache, progress_ttl=settings.REDIS_PROGRESS_TTL)
    runner = CrawlJobRunner(store, settings, transport=transport)
    return await runner.run(job_id, config, control)


async def _run_in_worker(job_id: UUID) -> JobStatus | None:
    async with worker_resources() as (store, cache):
        return await execute_crawl_job(job_id, store, cache)


async def _mark_failed(job_id: UUID, message: str) -> None:
    async with worker_resources() as (store, _):
        await store.finish_job(job_id, JobStatus.FAILED, error_message=message)


@celery_app.task(
    name=RUN_CRAWL_TASK,
    bind=True,
    queue=CRAWL_QUEUE,
    soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    time_limit=settings.CELERY_TASK_TIME_LIMIT,
    acks_late=True,
)
def run_crawl_job(self, job_id: str) -> dict:
    """Execute one crawl job in this worker."""
    with job_log_context(job_id=job_id, task_id=self.request.id):
        logger.info("Starting crawl task")
        try:
            status = run_async(_run_in_worker(UUID(job_id)))
        except SoftTimeLimitExceeded:
            logger.error("Crawl task soft time limit exceeded")
            run_async(_mark_failed(UUID(job_id), "Crawl exceeded the worker time limit"))
            return {"job_id": job_id, "status": JobStatus.FAILED.value}

    return {"job_id": job_id, "status": status.value if status else None}


# ─────────────────────────────────────────────
# Task: Dispatch Due Schedules
# ─────────────────────────────────────────────

def enqueue_crawl(job_id: str) -> str:
    """Send a job to crawl_queue; the Celery task id is the job id."""
    return run_crawl_job.apply_async(args=[job_id], task_id=job_id).id


async def dispatch_due(
    store: CrawlStore,
    now: datetime,
    dispatch: Callable[[str], str] = enqueue_crawl,
) -> list[str]:
    """
    Create and dispatch one job per due schedule, then advance its next run.
    Schedules without a next run only get one computed; they fire on the following tick.
    Returns the ids of dispatched jobs.
    """
    for schedule in await store.unscheduled():
        await store.update_schedule(schedule.id, next_run_at=next_run_after(schedule.cron_expression, now))

    dispatched: list[str] = []
    for schedule in await store.due_schedules(now):
        log = logger.bind(schedule_id=str(schedule.id), schedule=schedule.name)
        next_run_at = next_run_after(schedule.cron_expression, now)

        try:
            config = CrawlConfig.model_validate({**schedule.config, "target_url": schedule.target_url})
        except ValidationError as e:
            log.error("schedule_config_invalid", error=str(e))
            await store.update_schedule(schedule.id, next_run_at=next_run_at)
            continue

        job = await store.create_job(
            config,
            name=f"{schedule.name} ({now:%Y-%m-%d %H:%M} UTC)",
            schedule_id=schedule.id,
        )
        await store.mark_schedule_run(schedule.id, last_run_at=now, next_run_at=next_run_at)

        try:
            task_id = dispatch(str(job.id))
        except OperationalError as e:
            log.error("scheduled_crawl_dispatch_failed", job_id=str(job.id), error=str(e))
            await store.finish_job(job.id, JobStatus.FAILED, error_message=f"Dispatch failed: {e}")
            continue

        await store.set_celery_task_id(job.id, task_id)
        dispatched.append(str(job.id))
        log.info("scheduled_crawl_dispatched", job_id=str(job.id), next_run_at=next_run_at.isoformat())

    return dispatched


async def _dispatch_in_worker() -> list[str]:
    async with worker_resources() as (store, _):
        return await dispatch_due(store, datetime.now(timezone.utc))


@celery_app.task(name=DISPATCH_SCHEDULES_TASK)
def dispatch_due_schedules() -> dict:
    job_ids = run_async(_dispatch_in_worker())
    if job_ids:
        logger.info("Dispatched scheduled crawls", count=len(job_ids))
    return {"dispatched": job_ids}
