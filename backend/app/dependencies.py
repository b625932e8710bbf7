"""FastAPI dependency injection functions."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.security import TokenPayload, get_current_principal
import db.database as database

logger = logging.getLogger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    The engine commits its own transitions; whatever is left is
    committed on success or rolled back on error.
    """
    async with database.AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error(f"Database error: {str(e)}")
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_current_org(
    principal: TokenPayload = Depends(get_current_principal),
) -> str:
    """Organization the authenticated caller acts for."""
    return principal.org_id


def get_notifier():
    from notifications.manager import get_notification_manager

    return get_notification_manager()


def get_role_directory():
    from notifications.directory import RoleDirectory

    return RoleDirectory.from_settings()


async def get_execution_engine(
    db: AsyncSession = Depends(get_db),
    notifier=Depends(get_notifier),
    directory=Depends(get_role_directory),
):
    """Engine bound to the request's session, with Celery wake-up hints."""
    from workflow.engine import ExecutionEngine
    from worker.tasks.steps import schedule_wakeup

    return ExecutionEngine(db, notifier=notifier, directory=directory, wakeup=schedule_wakeup)
