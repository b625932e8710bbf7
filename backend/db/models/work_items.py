"""Task and ApprovalRequest models.

Both are created by step handlers and afterwards changed only by the
human-action surface (outside this service) and by the SLA tracker's
escalation bookkeeping.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkItemStatus
from db.base import BaseModel, EscalationTrackingMixin


class WorkflowTask(EscalationTrackingMixin, BaseModel):
    """A unit of work assigned to a role with a due date.

    Invariant: ``due_date == started_at + due hours``.
    """

    __tablename__ = "workflow_tasks"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    execution_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    step_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default=WorkItemStatus.PENDING.value, index=True
    )
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class ApprovalRequest(EscalationTrackingMixin, BaseModel):
    """A sign-off requested from a role.

    Invariant: ``due_date == started_at + due hours``.
    """

    __tablename__ = "approval_requests"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    execution_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    step_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    assigned_role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), default=WorkItemStatus.PENDING.value, index=True
    )
    context: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
