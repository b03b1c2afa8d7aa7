"""
Persistence gateway for crawl jobs, results and schedules.

Every write is one short transaction:
- results are inserted together with SQL-side counter increments, so any
  number of concurrent workers can write without read-modify-write races
- terminal status writes are conditional on status IN ('pending', 'running'),
  so the first terminal write wins

Database and I/O failures surface as PersistenceError; callers never see raw
SQLAlchemy exceptions.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seo_crawler.engines.base import CrawlConfig, CrawlRecord, JobStatus
from seo_crawler.models.models import CrawlJob, CrawlResult, CrawlSchedule, utcnow

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


class PersistenceError(Exception):
    """The crawl store could not complete a read or write."""


def default_job_name(target_url: str) -> str:
    return f"Crawl of {target_url}"


class CrawlStore:
    """Async CRUD over crawl_jobs, crawl_results and crawl_schedules."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    async def ping(self) -> None:
        """Round-trip a trivial query; raises PersistenceError when the database is unreachable."""
        async with self.session() as session:
            await session.execute(select(1))

    # ─────────────────────────────────────────────
    # Jobs
    # ─────────────────────────────────────────────

    async def create_job(
        self,
        config: CrawlConfig,
        name: str | None = None,
        schedule_id: uuid.UUID | None = None,
    ) -> CrawlJob:
        job = CrawlJob(
            name=name or default_job_name(config.target_url),
            target_url=config.target_url,
            crawl_type=config.crawl_type,
            status=JobStatus.PENDING.value,
            config=config.model_dump(mode="json"),
            schedule_id=schedule_id,
        )
        async with self.session() as session:
            session.add(job)
            await session.commit()
        logger.info("crawl_job_created", job_id=str(job.id), target_url=job.target_url)
        return job

    async def get_job(self, job_id: uuid.UUID) -> CrawlJob | None:
        async with self.session() as session:
            return await session.get(CrawlJob, job_id)

    async def list_jobs(self, limit: int = 50, offset: int = 0) -> list[CrawlJob]:
        async with self.session() as session:
            result = await session.execute(
                select(CrawlJob).order_by(CrawlJob.created_at.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())

    async def claim_job(self, job_id: uuid.UUID) -> bool:
        """pending -> running. False when the job is gone or already past pending."""
        async with self.session() as session:
            result = await session.execute(
                update(CrawlJob)
                .where(CrawlJob.id == job_id, CrawlJob.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, started_at=utcnow(), updated_at=utcnow())
            )
            await session.commit()
            return result.rowcount == 1

    async def finish_job(
        self,
        job_id: uuid.UUID,
        status: JobStatus,
        duration_ms: int | None = None,
        error_message: str | None = None,
        pages_total: int | None = None,
    ) -> bool:
        """Write a terminal status. Only the first terminal write succeeds."""
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": utcnow(),
            "updated_at": utcnow(),
        }
        if duration_ms is not None:
            values["duration_ms"] = duration_ms
        if error_message is not None:
            values["error_message"] = error_message[:2000]
        if pages_total is not None:
            values["pages_total"] = pages_total

        async with self.session() as session:
            result = await session.execute(
                update(CrawlJob)
                .where(CrawlJob.id == job_id, CrawlJob.status.in_(ACTIVE_STATUSES))
                .values(**values)
            )
            await session.commit()
            won = result.rowcount == 1
        if won:
            logger.info("crawl_job_finished", job_id=str(job_id), status=status.value, duration_ms=duration_ms)
        return won

    async def set_celery_task_id(self, job_id: uuid.UUID, task_id: str) -> None:
        async with self.session() as session:
            await session.execute(
                update(CrawlJob).where(CrawlJob.id == job_id).values(celery_task_id=task_id)
            )
            await session.commit()

    async def delete_job(self, job_id: uuid.UUID) -> bool:
        async with self.session() as session:
            await session.execute(delete(CrawlResult).where(CrawlResult.job_id == job_id))
            result = await session.execute(delete(CrawlJob).where(CrawlJob.id == job_id))
            await session.commit()
            return result.rowcount == 1

    # ─────────────────────────────────────────────
    # Results
    # ─────────────────────────────────────────────

    async def save_result(
        self,
        job_id: uuid.UUID,
        record: CrawlRecord,
        pages_total: int | None = None,
    ) -> bool:
        """
        Insert one result and bump the job counters in the same transaction.
        Returns False (and writes nothing) if the URL is already recorded for this job.
        """
        row = CrawlResult(job_id=job_id, **record.model_dump(mode="json"))
        counters: dict[str, Any] = {
            "pages_crawled": CrawlJob.pages_crawled + (1 if record.fetched else 0),
            "errors_count": CrawlJob.errors_count + (1 if record.is_error else 0),
            "warnings_count": CrawlJob.warnings_count + record.warning_count,
            "updated_at": utcnow(),
        }
        if pages_total is not None:
            counters["pages_total"] = case(
                (CrawlJob.pages_total < pages_total, pages_total),
                else_=CrawlJob.pages_total,
            )

        async with self.session() as session:
            session.add(row)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.warning("crawl_result_duplicate", job_id=str(job_id), url=record.url)
                return False
            await session.execute(update(CrawlJob).where(CrawlJob.id == job_id).values(**counters))
            await session.commit()
        return True

    async def get_results(
        self,
        job_id: uuid.UUID,
        page: int = 1,
        per_page: int = 50,
    ) -> tuple[list[CrawlResult], int]:
        async with self.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(CrawlResult).where(CrawlResult.job_id == job_id)
            )
            result = await session.execute(
                select(CrawlResult)
                .where(CrawlResult.job_id == job_id)
                .order_by(CrawlResult.depth, CrawlResult.crawled_at, CrawlResult.url)
                .limit(per_page)
                .offset((page - 1) * per_page)
            )
            return list(result.scalars().all()), total or 0

    async def all_results(self, job_id: uuid.UUID) -> list[CrawlResult]:
        async with self.session() as session:
            result = await session.execute(
                select(CrawlResult)
                .where(CrawlResult.job_id == job_id)
                .order_by(CrawlResult.depth, CrawlResult.url)
            )
            return list(result.scalars().all())

    # ─────────────────────────────────────────────
    # Schedules
    # ─────────────────────────────────────────────

    async def create_schedule(
        self,
        name: str,
        target_url: str,
        cron_expression: str,
        config: dict[str, Any],
        is_active: bool = True,
        next_run_at: datetime | None = None,
    ) -> CrawlSchedule:
        schedule = CrawlSchedule(
            name=name,
            target_url=target_url,
            cron_expression=cron_expression,
            config=config,
            is_active=is_active,
            next_run_at=next_run_at,
        )
        async with self.session() as session:
            session.add(schedule)
            await session.commit()
        return schedule

    async def get_schedule(self, schedule_id: uuid.UUID) -> CrawlSchedule | None:
        async with self.session() as session:
            return await session.get(CrawlSchedule, schedule_id)

    async def list_schedules(self, active_only: bool = False) -> list[CrawlSchedule]:
        stmt = select(CrawlSchedule).order_by(CrawlSchedule.created_at)
        if active_only:
            stmt = stmt.where(CrawlSchedule.is_active.is_(True))
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_schedule(self, schedule_id: uuid.UUID, **fields: Any) -> CrawlSchedule | None:
        async with self.session() as session:
            schedule = await session.get(CrawlSchedule, schedule_id)
            if schedule is None:
                return None
            for key, value in fields.items():
                setattr(schedule, key, value)
            await session.commit()
            return schedule

    async def delete_schedule(self, schedule_id: uuid.UUID) -> bool:
        async with self.session() as session:
            await session.execute(
                update(CrawlJob).where(CrawlJob.schedule_id == schedule_id).values(schedule_id=None)
            )
            result = await session.execute(delete(CrawlSchedule).where(CrawlSchedule.id == schedule_id))
            await session.commit()
            return result.rowcount == 1

    async def mark_schedule_run(
        self,
        schedule_id: uuid.UUID,
        last_run_at: datetime,
        next_run_at: datetime | None,
    ) -> None:
        async with self.session() as session:
            await session.execute(
                update(CrawlSchedule)
                .where(CrawlSchedule.id == schedule_id)
                .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=utcnow())
            )
            await session.commit()

    async def due_schedules(self, now: datetime) -> list[CrawlSchedule]:
        """Active schedules whose next run is at or before `now`."""
        async with self.session() as session:
            result = await session.execute(
                select(CrawlSchedule)
                .where(
                    CrawlSchedule.is_active.is_(True),
                    CrawlSchedule.next_run_at.is_not(None),
                    CrawlSchedule.next_run_at <= now,
                )
                .order_by(CrawlSchedule.next_run_at)
            )
            return list(result.scalars().all())

    async def unscheduled(self) -> list[CrawlSchedule]:
        """Active schedules that have never had a next run computed."""
        async with self.session() as session:
            result = await session.execute(
                select(CrawlSchedule).where(
                    CrawlSchedule.is_active.is_(True),
                    CrawlSchedule.next_run_at.is_(None),
                )
            )
            return list(result.scalars().all())

