"""
Cron helpers for recurring crawls, backed by celery.schedules.crontab.
"""

from __future__ import annotations

from datetime import datetime, timezone

from celery.schedules import ParseException, crontab


def parse_cron(expression: str, now: datetime | None = None) -> crontab:
    """
    Parse a standard 5-field cron expression (minute hour day month weekday).
    Raises ValueError on anything crontab rejects.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"cron expression '{expression}' must have 5 fields")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    kwargs = {}
    if now is not None:
        kwargs["nowfun"] = lambda: now
    try:
        schedule = crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            **kwargs,
        )
    except (ParseException, ValueError, TypeError, KeyError) as e:
        raise ValueError(f"invalid cron expression '{expression}': {e}") from e
    return schedule


def next_run_after(expression: str, after: datetime | None = None) -> datetime:
    """First fire time strictly after `after` (UTC, defaults to now)."""
    after = after or datetime.now(timezone.utc)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    schedule = parse_cron(expression, now=after)
    return after + schedule.remaining_estimate(after)
