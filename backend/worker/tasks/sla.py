"""Celery task running the SLA / escalation tracker on Celery Beat."""

import asyncio
import logging

from app.config import get_settings
from worker.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="worker.tasks.sla.sla_tick",
    bind=True,
    max_retries=2,
    default_retry_delay=15,
    queue="sla",
)
def sla_tick(self):
    """Detect SLA breaches and escalate."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(_tick())
        logger.info(f"[sla] Tick done: {result}")
        return result
    except Exception as exc:
        logger.error(f"[sla] Tick failed: {exc}", exc_info=True)
        raise self.retry(exc=exc)
    finally:
        loop.close()


async def _tick() -> dict:
    from db.worker_session import worker_session
    from notifications.directory import RoleDirectory
    from notifications.manager import get_notification_manager
    from workflow.sla import SLATracker

    settings = get_settings()
    async with worker_session() as session:
        tracker = SLATracker(
            session,
            notifier=get_notification_manager(),
            directory=RoleDirectory.from_settings(),
            batch_size=settings.SLA_BATCH_SIZE,
        )
        report = await tracker.tick()
    return report.to_dict()
