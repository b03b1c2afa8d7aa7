"""
Recurring crawl schedules.

Due schedules are dispatched by the Celery beat task
seo_crawler.workers.crawl_tasks.dispatch_due_schedules.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import ValidationError

from seo_crawler.api.deps import StoreDep
from seo_crawler.engines.base import CrawlConfig
from seo_crawler.services.scheduling import next_run_after
from seo_crawler.schemas.crawl import ScheduleCreate, ScheduleResponse, ScheduleUpdate

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("", response_model=list[ScheduleResponse], summary="List crawl schedules")
async def list_schedules(store: StoreDep, active_only: bool = Query(False)) -> list[ScheduleResponse]:
    schedules = await store.list_schedules(active_only=active_only)
    return [ScheduleResponse.model_validate(s) for s in schedules]


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED, summary="Create a schedule")
async def create_schedule(request: ScheduleCreate, store: StoreDep) -> ScheduleResponse:
    schedule = await store.create_schedule(
        name=request.name,
        target_url=request.target_url,
        cron_expression=request.cron_expression,
        config=request.config,
        is_active=request.is_active,
        next_run_at=next_run_after(request.cron_expression),
    )
    logger.info(
        "crawl_schedule_created",
        schedule_id=str(schedule.id),
        cron=schedule.cron_expression,
        next_run_at=schedule.next_run_at.isoformat(),
    )
    return ScheduleResponse.model_validate(schedule)


@router.get("/{schedule_id}", response_model=ScheduleResponse, summary="Get a schedule")
async def get_schedule(schedule_id: UUID, store: StoreDep) -> ScheduleResponse:
    schedule = await store.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    return ScheduleResponse.model_validate(schedule)


@router.patch("/{schedule_id}", response_model=ScheduleResponse, summary="Update a schedule")
async def update_schedule(schedule_id: UUID, request: ScheduleUpdate, store: StoreDep) -> ScheduleResponse:
    schedule = await store.get_schedule(schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="Schedule not found")

    fields: dict[str, Any] = request.model_dump(exclude_unset=True, exclude_none=True)
    if "config" in fields:
        try:
            config = CrawlConfig.model_validate({**fields["config"], "target_url": schedule.target_url})
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e
        fields["config"] = config.model_dump(mode="json", exclude={"target_url"})

    cron_changed = "cron_expression" in fields and fields["cron_expression"] != schedule.cron_expression
    reactivated = fields.get("is_active") is True and not schedule.is_active
    if cron_changed or reactivated:
        fields["next_run_at"] = next_run_after(fields.get("cron_expression", schedule.cron_expression))

    updated = await store.update_schedule(schedule_id, **fields)
    if updated is None:
        raise HTTPException(status_code=404, detail="Schedule not found")
    logger.info("crawl_schedule_updated", schedule_id=str(schedule_id), fields=sorted(fields))
    return ScheduleResponse.model_validate(updated)


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a schedule")
async def delete_schedule(schedule_id: UUID, store: StoreDep) -> Response:
    if not await store.delete_schedule(schedule_id):
        raise HTTPException(status_code=404, detail="Schedule not found")
    logger.info("crawl_schedule_deleted", schedule_id=str(schedule_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
