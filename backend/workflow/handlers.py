"""
Step handlers: one side-effecting unit of work per step kind.

Every handler receives ``(StepSpec, context, organization_id)`` and either
returns a :class:`StepResult` or raises:

- ``HandlerError`` when its side effect failed (the execution fails)
- ``TransportError`` when only the notification dispatch failed

Handlers never commit; the engine owns the transaction around a step.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import StepKind, Urgency
from core.exceptions import (
    EscalationExhaustedError,
    HandlerError,
    TransportError,
    WorkflowEngineError,
)
from core.utils import add_hours, json_safe, utc_now
from notifications.channels import DeliveryAck
from notifications.directory import RoleDirectory
from services.work_item_service import ApprovalRepository, TaskRepository
from workflow.plans import StepSpec

logger = structlog.get_logger(__name__)


@dataclass
class StepResult:
    """Standardized result from a step handler.

    ``context_updates`` are merged into the execution context by the engine.
    """

    output: Dict[str, Any]
    context_updates: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0


@dataclass
class HandlerDependencies:
    """Collaborators injected into every handler."""

    db: AsyncSession
    notifier: Any  # anything with NotificationManager.send's signature
    directory: RoleDirectory
    clock: Callable[[], datetime] = utc_now
    task_default_due_hours: float = 24
    approval_default_due_hours: float = 48
    notification_timeout: float = 10.0

    @classmethod
    def from_settings(
        cls,
        db: AsyncSession,
        notifier: Any,
        directory: RoleDirectory,
        clock: Callable[[], datetime] = utc_now,
    ) -> "HandlerDependencies":
        settings = get_settings()
        return cls(
            db=db,
            notifier=notifier,
            directory=directory,
            clock=clock,
            task_default_due_hours=settings.TASK_DEFAULT_DUE_HOURS,
            approval_default_due_hours=settings.APPROVAL_DEFAULT_DUE_HOURS,
            notification_timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )


class BaseStepHandler(ABC):
    """
    Abstract base class for step handlers.

    Subclasses implement ``execute``; the engine calls ``run``.
    """

    kind: StepKind

    def __init__(self, deps: HandlerDependencies):
        self.deps = deps

    @abstractmethod
    async def execute(
        self,
        step: StepSpec,
        context: Dict[str, Any],
        organization_id: str,
        execution_id: Optional[str] = None,
    ) -> StepResult:
        """
        Perform the step's side effect.

        Args:
            step: Resolved step being executed
            context: Execution context (read-only for handlers)
            organization_id: Owning organization
            execution_id: Execution the step belongs to, if any

        Returns:
            StepResult with the payload written to the execution log
        """
        pass

    async def run(
        self,
        step: StepSpec,
        context: Dict[str, Any],
        organization_id: str,
        execution_id: Optional[str] = None,
    ) -> StepResult:
        """
        Run the handler with timing and logging.

        Engine errors propagate unchanged; anything else is wrapped in a
        HandlerError so the engine sees a single failure type.
        """
        start = time.monotonic()
        log = logger.bind(step_id=step.step_id, step_kind=self.kind.value)
        log.info("Step starting", step_name=step.name)
        try:
            result = await self.execute(step, context, organization_id, execution_id)
        except WorkflowEngineError as e:
            log.warning(
                "Step failed",
                error=e.message,
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        except Exception as e:
            log.error(
                "Step crashed",
                error=str(e),
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise HandlerError(f"{step.name} failed: {e}", step_id=step.step_id) from e

        result.duration_ms = (time.monotonic() - start) * 1000
        log.info("Step completed", duration_ms=round(result.duration_ms, 2))
        return result


# ─── Notification ─────────────────────────────────────────────

class NotificationHandler(BaseStepHandler):
    """Resolve the assigned role to an address and dispatch a notification."""

    kind = StepKind.NOTIFICATION
    template_id = "workflow_step_notification"

    def resolve_recipient(self, role: Optional[str], organization_id: str) -> str:
        return self.deps.directory.resolve(role, organization_id)

    async def dispatch(
        self,
        to: str,
        subject: str,
        template_id: str,
        data: Dict[str, Any],
        organization_id: str,
        urgency: Urgency = Urgency.MEDIUM,
    ) -> DeliveryAck:
        """Send through the notifier, bounded by the notification timeout.

        Raises:
            TransportError: delivery failed or took longer than the timeout
        """
        timeout = self.deps.notification_timeout
        try:
            return await asyncio.wait_for(
                self.deps.notifier.send(
                    to=to,
                    subject=subject,
                    body_template_id=template_id,
                    data=json_safe(data),
                    urgency=urgency,
                    organization_id=organization_id,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"Notification to {to} timed out after {timeout}s", recipient=to
            )

    async def execute(self, step, context, organization_id, execution_id=None):
        to = self.resolve_recipient(step.assigned_role, organization_id)
        ack = await self.dispatch(
            to=to,
            subject=f"Workflow Notification: {step.name}",
            template_id=self.template_id,
            data={
                "step_name": step.name,
                "execution_id": execution_id,
                "workflow_context": context,
                "timestamp": self.deps.clock(),
            },
            organization_id=organization_id,
        )
        return StepResult(
            output={
                "message": f"Notification sent to {step.assigned_role}",
                "recipient": step.assigned_role,
                "address": to,
                "delivery": ack.to_dict(),
            }
        )


# ─── Task ─────────────────────────────────────────────────────

class TaskHandler(BaseStepHandler):
    """Create a Task due ``due_hours`` from now (default from settings)."""

    kind = StepKind.TASK

    async def execute(self, step, context, organization_id, execution_id=None):
        now = self.deps.clock()
        due_hours = step.due_hours if step.due_hours is not None else self.deps.task_default_due_hours
        due_date = add_hours(now, due_hours)

        task = await TaskRepository(self.deps.db).create(
            organization_id=organization_id,
            name=step.name,
            assigned_role=step.assigned_role,
            started_at=now,
            due_date=due_date,
            context=json_safe(context),
            execution_id=execution_id,
            step_id=step.step_id,
        )
        return StepResult(
            output={
                "message": f"Task created: {step.name}",
                "task_id": task.id,
                "due_date": due_date.isoformat(),
            }
        )


# ─── Approval ─────────────────────────────────────────────────

class ApprovalHandler(BaseStepHandler):
    """Create an ApprovalRequest and notify the approver.

    The approval counts as created even if the notification then fails;
    the failure is reported in the output.
    """

    kind = StepKind.APPROVAL
    template_id = "approval_request"

    def __init__(self, deps: HandlerDependencies, notifications: NotificationHandler):
        super().__init__(deps)
        self.notifications = notifications

    async def execute(self, step, context, organization_id, execution_id=None):
        # Unknown role fails before anything is written.
        to = self.notifications.resolve_recipient(step.assigned_role, organization_id)

        now = self.deps.clock()
        due_hours = (
            step.due_hours if step.due_hours is not None else self.deps.approval_default_due_hours
        )
        due_date = add_hours(now, due_hours)

        approval = await ApprovalRepository(self.deps.db).create(
            organization_id=organization_id,
            title=step.name,
            assigned_role=step.assigned_role,
            started_at=now,
            due_date=due_date,
            context=json_safe(context),
            execution_id=execution_id,
            step_id=step.step_id,
        )

        try:
            ack = await self.notifications.dispatch(
                to=to,
                subject=f"Approval Required: {step.name}",
                template_id=self.template_id,
                data={
                    "step_name": step.name,
                    "approval_id": approval.id,
                    "due_date": due_date,
                    "execution_id": execution_id,
                    "workflow_context": context,
                },
                organization_id=organization_id,
            )
            notification = ack.to_dict()
        except TransportError as e:
            logger.warning(
                "Approval notification failed",
                approval_id=approval.id,
                recipient=to,
                error=e.message,
            )
            notification = {"delivered": False, "recipient": to, "error": e.message}

        return StepResult(
            output={
                "message": f"Approval request created: {step.name}",
                "approval_id": approval.id,
                "due_date": due_date.isoformat(),
                "notification": notification,
            }
        )


# ─── Escalation ───────────────────────────────────────────────

class EscalationHandler(BaseStepHandler):
    """Notify the next role on an escalation path at critical urgency.

    As a plan step the path comes from ``context["escalation_path"]``
    (default: the step's assigned role) and the current level from
    ``context["escalation_level"]`` (default 0). The SLA tracker calls
    :meth:`escalate` directly with a rule's path.
    """

    kind = StepKind.ESCALATION
    template_id = "escalation_alert"

    def __init__(self, deps: HandlerDependencies, notifications: NotificationHandler):
        super().__init__(deps)
        self.notifications = notifications

    async def escalate(
        self,
        path: Sequence[str],
        level: int,
        organization_id: str,
        subject: str,
        data: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Escalate from ``level`` to ``level + 1``.

        Raises:
            EscalationExhaustedError: ``level`` is already past the last path entry
            HandlerError: the target role has no contact
            TransportError: dispatch failed
        """
        if level < 0 or level >= len(path):
            raise EscalationExhaustedError(level, len(path), step_id=step_id)

        role = path[level]
        to = self.notifications.resolve_recipient(role, organization_id)
        escalated_at = self.deps.clock()
        payload = {
            "escalated_to": role,
            "escalation_level": level + 1,
            "escalated_at": escalated_at,
            "urgency": "high",
            **(data or {}),
        }
        ack = await self.notifications.dispatch(
            to=to,
            subject=f"URGENT: Escalation Required - {subject}",
            template_id=self.template_id,
            data=payload,
            organization_id=organization_id,
            urgency=Urgency.CRITICAL,
        )
        logger.info("Escalated", target_role=role, level=level + 1)
        return {
            "message": f"Escalated to {role}",
            "escalation_level": level + 1,
            "target_role": role,
            "escalated_at": escalated_at.isoformat(),
            "delivery": ack.to_dict(),
        }

    async def execute(self, step, context, organization_id, execution_id=None):
        path = list(context.get("escalation_path") or [step.assigned_role])
        level = int(context.get("escalation_level", 0) or 0)
        output = await self.escalate(
            path,
            level,
            organization_id,
            subject=step.name,
            data={
                "escalation_reason": f"Workflow escalation: {step.name}",
                "execution_id": execution_id,
                "context": context,
            },
            step_id=step.step_id,
        )
        return StepResult(
            output=output,
            context_updates={"escalation_level": output["escalation_level"]},
        )


# ─── Registry ─────────────────────────────────────────────────

class StepHandlerRegistry:
    """Maps each step kind to its handler instance."""

    def __init__(self, deps: HandlerDependencies):
        self.deps = deps
        notifications = NotificationHandler(deps)
        self._handlers: Dict[StepKind, BaseStepHandler] = {}
        self.register(notifications)
        self.register(TaskHandler(deps))
        self.register(ApprovalHandler(deps, notifications))
        self.register(EscalationHandler(deps, notifications))

    def register(self, handler: BaseStepHandler) -> None:
        self._handlers[handler.kind] = handler

    def get(self, kind: StepKind) -> BaseStepHandler:
        handler = self._handlers.get(StepKind(kind))
        if handler is None:
            raise HandlerError(f"No handler registered for step kind {kind!r}")
        return handler

    @property
    def escalation(self) -> EscalationHandler:
        return self._handlers[StepKind.ESCALATION]
