"""
Database Models - Relational schema for crawl jobs, results and schedules.

Design decisions:
- UUID primary keys (no sequential int exposure)
- JSON columns (JSONB on PostgreSQL) for config snapshots and extracted blobs
- One crawl_results row per normalized URL per job, enforced by a unique constraint
- Results are append-only and cascade-deleted with their job
- Full audit trail with created_at/updated_at
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from seo_crawler.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Mixins
# ─────────────────────────────────────────────

class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)


# ─────────────────────────────────────────────
# Schedules
# ─────────────────────────────────────────────

class CrawlSchedule(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """A recurring crawl definition dispatched by Celery beat."""
    __tablename__ = "crawl_schedules"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(100), default="0 3 * * 1", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    jobs: Mapped[list["CrawlJob"]] = relationship("CrawlJob", back_populates="schedule")

    __table_args__ = (
        Index("ix_crawl_schedules_active_next", "is_active", "next_run_at"),
    )


# ─────────────────────────────────────────────
# Crawl Jobs
# ─────────────────────────────────────────────

class CrawlJob(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """One on-demand crawl of a site."""
    __tablename__ = "crawl_jobs"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    crawl_type: Mapped[str] = mapped_column(String(20), default="spider", nullable=False)  # spider | list
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    # pending | running | completed | cancelled | failed

    # Configuration snapshot at submission time
    config: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    pages_crawled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warnings_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    schedule_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("crawl_schedules.id", ondelete="SET NULL"), nullable=True
    )
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    schedule: Mapped[CrawlSchedule | None] = relationship("CrawlSchedule", back_populates="jobs")
    results: Mapped[list["CrawlResult"]] = relationship(
        "CrawlResult",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_crawl_jobs_status", "status"),
        Index("ix_crawl_jobs_created_at", "created_at"),
    )


# ─────────────────────────────────────────────
# Crawl Results
# ─────────────────────────────────────────────

class CrawlResult(Base, UUIDPrimaryKeyMixin):
    """Everything recorded for one URL within one job. Never updated after insert."""
    __tablename__ = "crawl_results"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("crawl_jobs.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    parent_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resource_type: Mapped[str] = mapped_column(String(10), default="page", nullable=False)

    # HTTP
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)  # NULL: not fetched (robots.txt)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Redirects
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    redirect_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    redirect_chain: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # On-page
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    title_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_description_length: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meta_keywords: Mapped[str | None] = mapped_column(Text, nullable=True)
    canonical_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    canonical_is_self: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    h1: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    h1_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    h2: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    h2_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    robots_meta: Mapped[str | None] = mapped_column(String(255), nullable=True)
    robots_txt_allowed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    x_robots_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Links / images
    internal_links_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    external_links_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_without_alt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    images_alt_text: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # Every outgoing link and resource URL, for broken-link attribution
    link_targets: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # International / structured data / social
    hreflang: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    hreflang_errors: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    structured_data: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    structured_data_errors: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    og_tags: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    twitter_tags: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Content
    word_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    text_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    custom_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    accessibility_issues: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Verdicts
    indexable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    indexability_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    issues: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)

    crawled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    job: Mapped[CrawlJob] = relationship("CrawlJob", back_populates="results")

    __table_args__ = (
        UniqueConstraint("job_id", "url_hash", name="uq_crawl_results_job_url_hash"),
        Index("ix_crawl_results_job_id", "job_id"),
        Index("ix_crawl_results_job_status", "job_id", "status_code"),
        Index("ix_crawl_results_job_content_hash", "job_id", "content_hash"),
    )
