"""Database models for the workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.execution import Execution
from db.models.execution_log import ExecutionLog
from db.models.work_items import ApprovalRequest, WorkflowTask
from db.models.escalation import EscalationEvent, EscalationRule
from db.models.scheduled_step import ScheduledStep

__all__ = [
    "Execution",
    "ExecutionLog",
    "WorkflowTask",
    "ApprovalRequest",
    "EscalationRule",
    "EscalationEvent",
    "ScheduledStep",
]
