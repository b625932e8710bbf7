"""Base model classes for all SQLAlchemy models."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from core.utils import utc_now


class Base(DeclarativeBase):
    """Declarative base shared by every table."""

    pass


class EscalationTrackingMixin:
    """Columns the SLA tracker compare-and-sets on a watched entity.

    ``escalation_level`` is the number of escalation-path entries already
    notified for this entity. It only ever moves forward, one step at a time,
    through a conditional UPDATE.
    """

    escalation_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class BaseModel(Base):
    """Abstract base model with a UUID key and timestamps.

    All domain models except the append-only execution log inherit from this.
    """

    __abstract__ = True

    id: Mapped[str] = mapped_column(primary_key=True, default=lambda: str(uuid4()))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
