"""
Crawl API Routes

No business logic lives here.
Routes validate input, call the store / job manager / analytics, return responses.
"""

from __future__ import annotations

import asyncio
from typing import Any, Literal
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Response, status
from kombu.exceptions import OperationalError
from redis.exceptions import RedisError

from seo_crawler.api.deps import AnalyticsDep, CacheDep, ManagerDep, StoreDep
from seo_crawler.core.config import get_settings
from seo_crawler.core.redis import CacheManager
from seo_crawler.engines.analytics.engine import render_csv, render_json
from seo_crawler.engines.base import JobStatus
from seo_crawler.engines.crawler.control import (
    CrawlJobManager,
    read_remote_progress,
    request_remote_cancel,
)
from seo_crawler.models.models import CrawlJob
from seo_crawler.schemas.crawl import (
    CancelResponse,
    CrawlJobCreated,
    CrawlJobResponse,
    CrawlResultResponse,
    CreateCrawlRequest,
    PaginatedResponse,
)
from seo_crawler.services.store import CrawlStore

logger = structlog.get_logger(__name__)
router = APIRouter()

DELETE_CANCEL_TIMEOUT = 30.0


async def _require_job(store: CrawlStore, job_id: UUID) -> CrawlJob:
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Crawl job not found")
    return job


async def _live_progress(job: CrawlJob, manager: CrawlJobManager, cache: CacheManager | None) -> dict[str, Any] | None:
    snapshot = manager.progress(job.id)
    if snapshot is not None:
        return snapshot.to_dict()
    if cache is not None and job.status == JobStatus.RUNNING.value:
        try:
            return await read_remote_progress(cache, job.id)
        except RedisError as e:
            logger.warning("remote_progress_unavailable", job_id=str(job.id), error=str(e))
    return None


# ─────────────────────────────────────────────
# Job lifecycle
# ─────────────────────────────────────────────

@router.post(
    "",
    response_model=CrawlJobCreated,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a new crawl",
    description="Validates the configuration, persists a pending job and starts crawling in the background.",
)
async def create_crawl(request: CreateCrawlRequest, store: StoreDep, manager: ManagerDep) -> CrawlJobCreated:
    config = request.to_config()
    job = await store.create_job(config, name=request.name)

    if get_settings().CRAWLER_RUN_IN_WORKER:
        from seo_crawler.workers import crawl_tasks

        # Publishing blocks on the broker connection
        try:
            task_id = await asyncio.to_thread(crawl_tasks.enqueue_crawl, str(job.id))
        except OperationalError as e:
            logger.error("crawl_job_dispatch_failed", job_id=str(job.id), error=str(e))
            await store.finish_job(job.id, JobStatus.FAILED, error_message=f"Dispatch failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Crawl queue unavailable; the job was marked failed",
            )
        await store.set_celery_task_id(job.id, task_id)
        logger.info("crawl_job_dispatched", job_id=str(job.id), task_id=task_id)
    else:
        manager.start(job.id, config)

    return CrawlJobCreated(
        id=job.id,
        status=job.status,
        created_at=job.created_at,
        message=f"Crawl started. Poll /api/v1/crawls/{job.id}/progress for status.",
    )


@router.get("", response_model=list[CrawlJobResponse], summary="List crawl jobs, newest first")
async def list_crawls(
    store: StoreDep,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[CrawlJobResponse]:
    jobs = await store.list_jobs(limit=limit, offset=offset)
    return [CrawlJobResponse.model_validate(job) for job in jobs]


@router.get("/{job_id}", response_model=CrawlJobResponse, summary="Get a crawl job with live progress")
async def get_crawl(job_id: UUID, store: StoreDep, manager: ManagerDep, cache: CacheDep) -> CrawlJobResponse:
    job = await _require_job(store, job_id)
    response = CrawlJobResponse.model_validate(job)
    response.progress = await _live_progress(job, manager, cache)
    return response


@router.get("/{job_id}/progress", summary="Live progress, falling back to persisted counters")
async def get_progress(job_id: UUID, store: StoreDep, manager: ManagerDep, cache: CacheDep) -> dict[str, Any]:
    job = await _require_job(store, job_id)
    live = await _live_progress(job, manager, cache)
    if live is not None:
        return live
    return {
        "job_id": str(job.id),
        "status": job.status,
        "pages_crawled": job.pages_crawled,
        "pages_total": job.pages_total,
        "errors_count": job.errors_count,
        "warnings_count": job.warnings_count,
        "elapsed_ms": job.duration_ms,
    }


@router.post("/{job_id}/cancel", response_model=CancelResponse, summary="Cancel a crawl (idempotent)")
async def cancel_crawl(job_id: UUID, store: StoreDep, manager: ManagerDep, cache: CacheDep) -> CancelResponse:
    job = await _require_job(store, job_id)
    if JobStatus(job.status).is_terminal:
        return CancelResponse(
            id=job.id, status=job.status, cancelled=False, message=f"Crawl already {job.status}"
        )

    running_here = manager.cancel(job_id)
    if cache is not None:
        try:
            await request_remote_cancel(cache, job_id)
        except RedisError as e:
            logger.warning("remote_cancel_request_failed", job_id=str(job_id), error=str(e))

    # Nobody will observe the flag: a pending job, or an orphaned one without a shared cache
    if not running_here and (cache is None or job.status == JobStatus.PENDING.value):
        await store.finish_job(job_id, JobStatus.CANCELLED)
        return CancelResponse(id=job.id, status=JobStatus.CANCELLED.value, cancelled=True, message="Crawl cancelled")

    return CancelResponse(
        id=job.id, status=job.status, cancelled=True, message="Cancellation requested"
    )


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a crawl and its results")
async def delete_crawl(job_id: UUID, store: StoreDep, manager: ManagerDep, cache: CacheDep) -> Response:
    job = await _require_job(store, job_id)

    if not JobStatus(job.status).is_terminal:
        if manager.cancel(job_id):
            if await manager.wait(job_id, timeout=DELETE_CANCEL_TIMEOUT) is None:
                logger.warning("delete_cancel_timeout", job_id=str(job_id))
        elif cache is not None:
            try:
                await request_remote_cancel(cache, job_id)
            except RedisError as e:
                logger.warning("remote_cancel_request_failed", job_id=str(job_id), error=str(e))

    await store.delete_job(job_id)
    logger.info("crawl_job_deleted", job_id=str(job_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ─────────────────────────────────────────────
# Results and reports
# ─────────────────────────────────────────────

@router.get("/{job_id}/results", response_model=PaginatedResponse, summary="Paginated crawl results")
async def get_results(
    job_id: UUID,
    store: StoreDep,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
) -> PaginatedResponse:
    await _require_job(store, job_id)
    rows, total = await store.get_results(job_id, page=page, per_page=per_page)
    return PaginatedResponse(
        items=[CrawlResultResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        per_page=per_page,
        pages=-(-total // per_page),
    )


@router.get("/{job_id}/issues", summary="Issues grouped by type and severity")
async def get_issues(job_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> list[dict[str, Any]]:
    await _require_job(store, job_id)
    return await analytics.issue_summary(job_id)


@router.get("/{job_id}/duplicates", summary="Duplicate content clusters")
async def get_duplicates(job_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> list[dict[str, Any]]:
    await _require_job(store, job_id)
    return await analytics.duplicate_clusters(job_id)


@router.get("/{job_id}/redirects", summary="Redirects, longest chains first")
async def get_redirects(job_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> list[dict[str, Any]]:
    await _require_job(store, job_id)
    return await analytics.redirect_report(job_id)


@router.get("/{job_id}/broken-links", summary="Errored URLs with every page that links to them")
async def get_broken_links(job_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> list[dict[str, Any]]:
    await _require_job(store, job_id)
    return await analytics.broken_links(job_id)


@router.get("/{job_id}/summary", summary="Status, indexability and issue totals")
async def get_summary(job_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> dict[str, Any]:
    job = await _require_job(store, job_id)
    summary = await analytics.summary(job_id)
    summary.update(
        job_id=str(job.id),
        status=job.status,
        pages_crawled=job.pages_crawled,
        errors_count=job.errors_count,
        warnings_count=job.warnings_count,
    )
    return summary


@router.get("/{job_id}/compare/{other_id}", summary="Per-URL diff against another crawl")
async def compare_crawls(job_id: UUID, other_id: UUID, store: StoreDep, analytics: AnalyticsDep) -> dict[str, Any]:
    await _require_job(store, job_id)
    await _require_job(store, other_id)
    return await analytics.compare_jobs(job_id, other_id)


@router.get("/{job_id}/export", summary="Export results as CSV or JSON")
async def export_crawl(
    job_id: UUID,
    store: StoreDep,
    analytics: AnalyticsDep,
    format: Literal["csv", "json"] = Query("csv"),
) -> Response:
    await _require_job(store, job_id)
    rows = await analytics.export_rows(job_id)
    filename = f"crawl-{job_id}.{format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if format == "json":
        return Response(content=render_json(rows), media_type="application/json", headers=headers)
    return Response(content=render_csv(rows), media_type="text/csv", headers=headers)
