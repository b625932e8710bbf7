"""Escalation rule and escalation event models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import Severity
from db.base import BaseModel


class EscalationRule(BaseModel):
    """Org-defined escalation policy evaluated by the SLA tracker.

    Attributes:
        trigger_condition: task_overdue, approval_overdue or execution_overdue
        severity: Minimum entity severity the rule applies to
        escalation_path: Ordered roles; level L+1 notifies ``escalation_path[L]``
        time_thresholds: Hours granted to each path entry before the next
            level fires; parallel to ``escalation_path``
    """

    __tablename__ = "escalation_rules"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_condition: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(32), default=Severity.MEDIUM.value)
    escalation_path: Mapped[list] = mapped_column(JSON, default=list)
    time_thresholds: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class EscalationEvent(BaseModel):
    """Append-only record of one escalation attempt for an entity."""

    __tablename__ = "escalation_events"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    rule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    target_role: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
