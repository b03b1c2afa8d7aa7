"""initial crawl schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "crawl_schedules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("cron_expression", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("config", JSONType, nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crawl_schedules_active_next", "crawl_schedules", ["is_active", "next_run_at"])

    op.create_table(
        "crawl_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("crawl_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("config", JSONType, nullable=False),
        sa.Column("pages_crawled", sa.Integer(), nullable=False),
        sa.Column("pages_total", sa.Integer(), nullable=False),
        sa.Column("errors_count", sa.Integer(), nullable=False),
        sa.Column("warnings_count", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "schedule_id",
            sa.Uuid(),
            sa.ForeignKey("crawl_schedules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("celery_task_id", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_crawl_jobs_status", "crawl_jobs", ["status"])
    op.create_index("ix_crawl_jobs_created_at", "crawl_jobs", ["created_at"])

    op.create_table(
        "crawl_results",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("crawl_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("url_hash", sa.String(32), nullable=False),
        sa.Column("parent_url", sa.Text(), nullable=True),
        sa.Column("depth", sa.Integer(), nullable=False),
        sa.Column("resource_type", sa.String(10), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("content_type", sa.String(255), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("content_size", sa.Integer(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("redirect_url", sa.Text(), nullable=True),
        sa.Column("redirect_type", sa.String(20), nullable=True),
        sa.Column("redirect_chain", JSONType, nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("title_length", sa.Integer(), nullable=True),
        sa.Column("meta_description", sa.Text(), nullable=True),
        sa.Column("meta_description_length", sa.Integer(), nullable=True),
        sa.Column("meta_keywords", sa.Text(), nullable=True),
        sa.Column("canonical_url", sa.Text(), nullable=True),
        sa.Column("canonical_is_self", sa.Boolean(), nullable=True),
        sa.Column("h1", JSONType, nullable=False),
        sa.Column("h1_count", sa.Integer(), nullable=False),
        sa.Column("h2", JSONType, nullable=False),
        sa.Column("h2_count", sa.Integer(), nullable=False),
        sa.Column("robots_meta", sa.String(255), nullable=True),
        sa.Column("robots_txt_allowed", sa.Boolean(), nullable=False),
        sa.Column("x_robots_tag", sa.String(255), nullable=True),
        sa.Column("internal_links_count", sa.Integer(), nullable=False),
        sa.Column("external_links_count", sa.Integer(), nullable=False),
        sa.Column("images_count", sa.Integer(), nullable=False),
        sa.Column("images_without_alt", sa.Integer(), nullable=False),
        sa.Column("images_alt_text", JSONType, nullable=True),
        sa.Column("hreflang", JSONType, nullable=False),
        sa.Column("hreflang_errors", JSONType, nullable=False),
        sa.Column("structured_data", JSONType, nullable=False),
        sa.Column("structured_data_errors", JSONType, nullable=False),
        sa.Column("og_tags", JSONType, nullable=True),
        sa.Column("twitter_tags", JSONType, nullable=True),
        sa.Column("word_count", sa.Integer(), nullable=True),
        sa.Column("text_ratio", sa.Float(), nullable=True),
        sa.Column("custom_data", JSONType, nullable=True),
        sa.Column("accessibility_issues", JSONType, nullable=False),
        sa.Column("indexable", sa.Boolean(), nullable=False),
        sa.Column("indexability_reason", sa.String(255), nullable=True),
        sa.Column("issues", JSONType, nullable=False),
        sa.Column("crawled_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("job_id", "url_hash", name="uq_crawl_results_job_url_hash"),
    )
    op.create_index("ix_crawl_results_job_id", "crawl_results", ["job_id"])
    op.create_index("ix_crawl_results_job_status", "crawl_results", ["job_id", "status_code"])
    op.create_index("ix_crawl_results_job_content_hash", "crawl_results", ["job_id", "content_hash"])


def downgrade() -> None:
    op.drop_table("crawl_results")
    op.drop_table("crawl_jobs")
    op.drop_table("crawl_schedules")
