"""Durable step timer model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ScheduledStepStatus
from db.base import BaseModel


class ScheduledStep(BaseModel):
    """A step waiting for its fire time, keyed by (execution, step, fire_at).

    The row is the timer: it survives restarts, and the step poller picks it
    up once ``fire_at`` has passed. Status moves pending -> firing -> fired,
    or pending -> cancelled, each move a conditional UPDATE.
    """

    __tablename__ = "scheduled_steps"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False)
    fire_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=ScheduledStepStatus.PENDING.value, nullable=False
    )
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("execution_id", "step_id", name="uq_scheduled_steps_execution_step"),
        Index("ix_scheduled_steps_due", "status", "fire_at"),
    )
