"""
Utility functions for the workflow engine.

Includes:
- UTC datetime helpers
- Workflow identifier normalisation
- JSON-safe conversion of handler payloads
"""

import re
from enum import Enum
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional


def utc_now() -> datetime:
    """
    Get the current UTC time as a **naive** datetime.

    Timestamp columns are stored without time zone, so every comparison
    inside the engine and the SLA tracker is naive-UTC.

    Returns:
        Current UTC datetime without tzinfo
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def add_hours(start: datetime, hours: Optional[float]) -> datetime:
    """Return ``start + hours`` (``None`` counts as zero)."""
    return start + timedelta(hours=hours or 0)


def total_hours(values: Iterable[Optional[float]]) -> float:
    """Sum a sequence of optional hour values."""
    return float(sum(v for v in values if v))


def normalize_identifier(identifier: str) -> str:
    """
    Normalise a workflow identifier to a registry key.

    Lower-cases, trims, and turns runs of spaces or hyphens into a single
    underscore: ``"KRI-breach"`` -> ``"kri_breach"``.

    Args:
        identifier: Raw workflow identifier

    Returns:
        Normalised key
    """
    key = identifier.strip().lower()
    key = re.sub(r"[\s\-]+", "_", key)
    return key


def json_safe(value: Any) -> Any:
    """Recursively convert datetimes and enums so a payload fits a JSON column."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value
