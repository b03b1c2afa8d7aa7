"""Request / response schemas for the crawl and schedule APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from seo_crawler.engines.base import CrawlConfig
from seo_crawler.services.scheduling import parse_cron


# ─────────────────────────────────────────────
# Crawl jobs
# ─────────────────────────────────────────────

class CreateCrawlRequest(CrawlConfig):
    name: str | None = Field(None, max_length=255)

    def to_config(self) -> CrawlConfig:
        return CrawlConfig.model_validate(self.model_dump(exclude={"name"}))


class CrawlJobCreated(BaseModel):
    id: UUID
    status: str
    created_at: datetime
    message: str = ""


class CrawlJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    target_url: str
    crawl_type: str
    status: str
    config: dict[str, Any]
    pages_crawled: int
    pages_total: int
    errors_count: int
    warnings_count: int
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int | None
    error_message: str | None
    schedule_id: UUID | None
    celery_task_id: str | None
    created_at: datetime
    updated_at: datetime
    progress: dict[str, Any] | None = None


class CancelResponse(BaseModel):
    id: UUID
    status: str
    cancelled: bool
    message: str


class CrawlResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    url: str
    url_hash: str
    parent_url: str | None
    depth: int
    resource_type: str
    status_code: int | None
    content_type: str | None
    response_time_ms: int | None
    content_size: int | None
    content_hash: str | None
    error_message: str | None
    redirect_url: str | None
    redirect_type: str | None
    redirect_chain: list[dict[str, Any]]
    title: str | None
    title_length: int | None
    meta_description: str | None
    meta_description_length: int | None
    meta_keywords: str | None
    canonical_url: str | None
    canonical_is_self: bool | None
    h1: list[str]
    h1_count: int
    h2: list[str]
    h2_count: int
    robots_meta: str | None
    robots_txt_allowed: bool
    x_robots_tag: str | None
    internal_links_count: int
    external_links_count: int
    images_count: int
    images_without_alt: int
    images_alt_text: dict[str, str] | None
    hreflang: list[dict[str, Any]]
    hreflang_errors: list[str]
    structured_data: list[dict[str, Any]]
    structured_data_errors: list[str]
    og_tags: dict[str, Any] | None
    twitter_tags: dict[str, Any] | None
    word_count: int | None
    text_ratio: float | None
    custom_data: dict[str, list[str]] | None
    accessibility_issues: list[dict[str, Any]]
    indexable: bool
    indexability_reason: str | None
    issues: list[dict[str, Any]]
    crawled_at: datetime


class PaginatedResponse(BaseModel):
    items: list[Any]
    total: int
    page: int
    per_page: int
    pages: int


# ─────────────────────────────────────────────
# Schedules
# ─────────────────────────────────────────────

def _validate_cron(value: str) -> str:
    parse_cron(value)
    return value


class ScheduleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    target_url: str
    cron_expression: str = "0 3 * * 1"
    is_active: bool = True
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _validate_cron(v)

    @model_validator(mode="after")
    def validate_config(self) -> "ScheduleCreate":
        # Validates target_url and every crawl option up front
        config = CrawlConfig.model_validate({**self.config, "target_url": self.target_url})
        self.target_url = config.target_url
        self.config = config.model_dump(mode="json", exclude={"target_url"})
        return self


class ScheduleUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    cron_expression: str | None = None
    is_active: bool | None = None
    config: dict[str, Any] | None = None

    @field_validator("cron_expression")
    @classmethod
    def validate_cron(cls, v: str | None) -> str | None:
        return None if v is None else _validate_cron(v)


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    target_url: str
    cron_expression: str
    is_active: bool
    config: dict[str, Any]
    last_run_at: datetime | None
    next_run_at: datetime | None
    created_at: datetime
    updated_at: datetime
