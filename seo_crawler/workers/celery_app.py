"""
Celery application for out-of-process crawls.

Queues:
- crawl_queue: one task per crawl job; a task can run for hours, so workers
  prefetch a single message and ack only after the job reaches a terminal state
- default:     the per-minute schedule dispatcher

Typical deployment:
    celery -A seo_crawler.workers.celery_app worker -Q crawl_queue -c 2
    celery -A seo_crawler.workers.celery_app worker -Q default -c 1
    celery -A seo_crawler.workers.celery_app beat
"""

import structlog
from celery import Celery
from celery.signals import after_setup_logger, worker_ready
from kombu import Exchange, Queue

from seo_crawler.core.config import get_settings

settings = get_settings()
logger = structlog.get_logger(__name__)

DEFAULT_QUEUE = "default"
CRAWL_QUEUE = "crawl_queue"
RUN_CRAWL_TASK = "seo_crawler.workers.crawl_tasks.run_crawl_job"
DISPATCH_SCHEDULES_TASK = "seo_crawler.workers.crawl_tasks.dispatch_due_schedules"

celery_app = Celery(
    "seo_crawler",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["seo_crawler.workers.crawl_tasks"],
)

crawl_exchange = Exchange("crawl", type="direct")

celery_app.conf.update(
    task_queues=(
        Queue(DEFAULT_QUEUE, Exchange(DEFAULT_QUEUE, type="direct"), routing_key=DEFAULT_QUEUE),
        Queue(CRAWL_QUEUE, crawl_exchange, routing_key="crawl"),
    ),
    task_default_queue=DEFAULT_QUEUE,
    task_default_exchange=DEFAULT_QUEUE,
    task_default_routing_key=DEFAULT_QUEUE,
    task_routes={
        RUN_CRAWL_TASK: {"queue": CRAWL_QUEUE, "routing_key": "crawl"},
        DISPATCH_SCHEDULES_TASK: {"queue": DEFAULT_QUEUE},
    },

    # Job ids, statuses and counters only; never pickle
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # lxml trees and per-job clients are large; recycle crawl processes regularly
    worker_max_tasks_per_child=settings.CELERY_MAX_TASKS_PER_CHILD,
    task_track_started=True,

    task_soft_time_limit=settings.CELERY_TASK_SOFT_TIME_LIMIT,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT,
    result_expires=settings.CELERY_RESULT_EXPIRES,

    worker_send_task_events=True,
    task_send_sent_event=True,

    beat_schedule={
        "dispatch-due-crawl-schedules": {
            "task": DISPATCH_SCHEDULES_TASK,
            "schedule": settings.SCHEDULE_DISPATCH_INTERVAL,
            "options": {"queue": DEFAULT_QUEUE, "expires": settings.SCHEDULE_DISPATCH_INTERVAL},
        },
    },
)


@worker_ready.connect
def on_worker_ready(sender, **kwargs):
    queues = [q.name for q in sender.app.conf.task_queues]
    logger.info("Celery worker ready", hostname=sender.hostname, queues=queues)


@after_setup_logger.connect
def setup_celery_logging(logger, *args, **kwargs):
    from seo_crawler.core.logging import configure_logging
    configure_logging()
