"""
Structured logging for the crawler service and its Celery workers.

Every event carries the service name and environment. Crawl events are keyed
by job_id: runners bind it on their logger, Celery tasks bind it through
contextvars so library code logging inside a task inherits it. Crawled URLs
can be arbitrarily long, so string values are clipped before rendering.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, Processor

from seo_crawler.core.config import get_settings

MAX_VALUE_LENGTH = 2000

# Chatty per-request loggers, silenced to WARNING everywhere
QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "charset_normalizer")
# Silenced only in production
PRODUCTION_QUIET_LOGGERS = ("asyncio", "sqlalchemy.engine", "celery", "kombu", "amqp")

_SEVERITY = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARNING",
    "error": "ERROR",
    "exception": "ERROR",
    "critical": "CRITICAL",
}


def add_severity(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    """Severity field understood by GCP / Datadog log ingestion."""
    event_dict["severity"] = _SEVERITY.get(method, "INFO")
    return event_dict


def add_service(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    settings = get_settings()
    event_dict.setdefault("service", "seo-crawler")
    event_dict.setdefault("env", settings.ENV)
    return event_dict


def clip_long_values(logger: Any, method: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            event_dict[key] = f"{value[:MAX_VALUE_LENGTH]}... ({len(value)} chars)"
    return event_dict


@contextmanager
def job_log_context(**values: Any) -> Iterator[None]:
    """Bind job_id (and friends) to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog and route stdlib logging to stdout. Safe to call repeatedly."""
    settings = get_settings()
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    log_format = fmt or settings.LOG_FORMAT

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_severity,
        add_service,
        clip_long_values,
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if settings.ENV == "production":
        for name in PRODUCTION_QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
