"""Health check endpoint.

Liveness plus a database ping; used by load balancers and k8s probes.
"""

from datetime import datetime, timezone
import time
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
import logging

from app.config import get_settings
import db.database as database

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/health", response_model=dict[str, Any])
async def health_check() -> dict[str, Any]:
    """
    Health check with database verification.
    """
    settings = get_settings()
    checks: dict[str, str] = {}

    try:
        async with database.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        checks["database"] = "unavailable"

    return {
        "status": "ok" if all(v == "ok" for v in checks.values()) else "degraded",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "checks": checks,
    }
