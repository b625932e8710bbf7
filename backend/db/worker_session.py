"""Worker-safe database session for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when async driver connections are shared
across the per-task event loops of forked Celery workers.
"""

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


@asynccontextmanager
async def worker_session():
    """Provide an async session safe for Celery workers.

    The engine commits its own state transitions; anything left uncommitted
    when the block exits is rolled back.

    Usage:
        async with worker_session() as session:
            engine = ExecutionEngine(session, ...)
    """
    settings = get_settings()
    kwargs = dict(echo=False)
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=5, pool_recycle=300)
    engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )
    try:
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
    finally:
        await engine.dispose()
