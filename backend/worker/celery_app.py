"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the steps and sla queues
- Serialization and timezone settings
- Beat schedule for the step poller and the SLA tick
"""

from celery import Celery
from celery.signals import worker_process_init

from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "workflow_engine",
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

    # Task routing
    task_routes={
        "worker.tasks.steps.*": {"queue": "steps"},
        "worker.tasks.sla.*": {"queue": "sla"},
        "worker.tasks.*": {"queue": "default"},
    },

    # Default queue
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Task execution limits
    task_soft_time_limit=300,   # 5 min soft limit (raises SoftTimeLimitExceeded)
    task_time_limit=600,        # 10 min hard limit (kills the task)
    task_acks_late=True,        # Acknowledge after execution
    worker_prefetch_multiplier=1,  # One task at a time per worker process

    # Retry
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    # Beat schedule. The timer rows are the source of truth; the poller
    # catches anything whose eta hint was lost.
    beat_schedule={
        "poll-due-steps": {
            "task": "worker.tasks.steps.poll_due_steps",
            "schedule": float(settings.STEP_POLL_SECONDS),
            "options": {"queue": "steps"},
        },
        "sla-tick": {
            "task": "worker.tasks.sla.sla_tick",
            "schedule": float(settings.SLA_TICK_SECONDS),
            "options": {"queue": "sla"},
        },
    },

    include=[
        "worker.tasks.steps",
        "worker.tasks.sla",
    ],
)


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    from core.logging_config import setup_logging

    setup_logging(component="worker")
