"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the workflow queue
- Serialization and timezone settings
- Beat schedule for resume polling and the status sync DLQ sweep
- Schema creation when the worker starts
"""

import asyncio

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init, worker_process_init

from app.config import get_settings
from core.logging_config import setup_logging
from db.worker_session import ensure_schema

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "jml_workflow",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.workflow.*": {"queue": "workflows"},
        "worker.tasks.*": {"queue": "default"},
    },
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Task execution limits
    task_soft_time_limit=300,
    task_time_limit=600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    beat_schedule={
        "poll-waiting-workflows": {
            "task": "worker.tasks.workflow.poll_waiting_workflows",
            "schedule": crontab(minute=f"*/{settings.RESUME_POLL_INTERVAL_MINUTES}"),
            "options": {"queue": "workflows"},
        },
        "retry-failed-syncs": {
            "task": "worker.tasks.workflow.retry_failed_syncs",
            "schedule": crontab(minute=f"*/{settings.SYNC_DLQ_SWEEP_INTERVAL_MINUTES}"),
            "options": {"queue": "workflows"},
        },
    },

    include=["worker.tasks.workflow"],
)


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    setup_logging()


@worker_init.connect
def _prepare_database(**kwargs):
    asyncio.run(ensure_schema())
