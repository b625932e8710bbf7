"""Execution model for the workflow engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus
from db.base import BaseModel, EscalationTrackingMixin


class Execution(EscalationTrackingMixin, BaseModel):
    """One runtime instance of a workflow being carried out for a context.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        workflow_id: Workflow identifier the caller submitted (a plan category)
        status: pending, running, completed, failed, cancelled
        current_step_id: Last step that finished (or the first step while it runs)
        in_flight_step_id: Step whose handler is running right now, if any
        in_flight_since: When that step was claimed; a claim older than the
            step lease is treated as abandoned by a crashed worker
        cancel_requested: Set by cancel while a handler is in flight
        context: Key/value payload threaded through every step
        steps: Snapshot of the resolved StepSpec list, so later steps run
            exactly the plan that was resolved at submit time
        steps_count: Number of resolved steps
        started_at / completed_at: Lifecycle timestamps (naive UTC)
        due_at: started_at + sum of step due hours, watched by the SLA tracker
        error_message: Failure detail of the step that failed the execution
        replay_of: Execution this one replays, for operator-initiated replays
    """

    __tablename__ = "executions"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), default=ExecutionStatus.PENDING.value, index=True
    )
    current_step_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    in_flight_step_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    in_flight_since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    steps: Mapped[list] = mapped_column(JSON, default=list)
    steps_count: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    replay_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    logs: Mapped[list["ExecutionLog"]] = relationship(
        "ExecutionLog",
        back_populates="execution",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED.value,
            ExecutionStatus.FAILED.value,
            ExecutionStatus.CANCELLED.value,
        )
