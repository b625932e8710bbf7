"""Celery tasks that fire scheduled workflow steps.

A scheduled step is a ``scheduled_steps`` row. Two paths lead to it:

- ``fire_step`` is enqueued with ``eta=fire_at`` when the row is written
  (a wake-up hint, lost if the broker loses it)
- ``poll_due_steps`` runs on Celery Beat and fires every due row

Both go through ``ExecutionEngine.fire_timer``, whose claim is a
conditional UPDATE, so a row fires once no matter how many paths reach it.

All datetime comparisons use NAIVE UTC to match the database columns.
"""

import asyncio
import logging
from datetime import datetime

from app.config import get_settings
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _build_engine(session):
    from notifications.directory import RoleDirectory
    from notifications.manager import get_notification_manager
    from workflow.engine import ExecutionEngine

    return ExecutionEngine(
        session,
        notifier=get_notification_manager(),
        directory=RoleDirectory.from_settings(),
        wakeup=schedule_wakeup,
    )


def schedule_wakeup(timer_id: str, fire_at: datetime) -> None:
    """Enqueue ``fire_step`` for ``fire_at`` (naive UTC) if wake-ups are enabled."""
    if not get_settings().SCHEDULER_WAKEUP:
        return
    fire_step.apply_async(args=[timer_id], eta=fire_at, queue="steps")


# ─── Single timer ─────────────────────────────────────────────

@celery_app.task(
    name="worker.tasks.steps.fire_step",
    bind=True,
    max_retries=3,
    default_retry_delay=30,
    queue="steps",
)
def fire_step(self, timer_id: str):
    """Fire one scheduled step."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        outcome = loop.run_until_complete(_fire(timer_id))
        logger.info(f"[steps] Timer {timer_id} -> {outcome}")
        return outcome
    except Exception as exc:
        logger.error(f"[steps] Timer {timer_id} failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _fire(timer_id: str) -> str:
    from db.worker_session import worker_session

    async with worker_session() as session:
        outcome = await _build_engine(session).fire_timer(timer_id)
    return outcome.value


# ─── Poller ───────────────────────────────────────────────────

@celery_app.task(
    name="worker.tasks.steps.poll_due_steps",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="steps",
)
def poll_due_steps(self):
    """Fire every scheduled step whose fire time has passed."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_poll())
        if result["fired"]:
            logger.info(f"[steps] Poll done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[steps] Polling failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _poll() -> dict:
    from db.worker_session import worker_session

    settings = get_settings()
    async with worker_session() as session:
        outcomes = await _build_engine(session).run_due_steps(limit=settings.STEP_POLL_BATCH)

    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.value] = counts.get(outcome.value, 0) + 1
    return {"fired": len(outcomes), "outcomes": counts}
