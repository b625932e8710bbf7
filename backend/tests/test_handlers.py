"""Tests for the step handlers."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import T0
from core.constants import StepKind, Urgency, WorkItemStatus
from core.exceptions import EscalationExhaustedError, HandlerError, TransportError
from db.models.work_items import ApprovalRequest, WorkflowTask
from notifications.directory import RoleDirectory
from workflow.handlers import (
    BaseStepHandler,
    HandlerDependencies,
    StepHandlerRegistry,
    StepResult,
)
from workflow.plans import StepSpec


@pytest.fixture
def deps(db_session, notifier, directory, clock):
    return HandlerDependencies(
        db=db_session,
        notifier=notifier,
        directory=directory,
        clock=clock,
        task_default_due_hours=24,
        approval_default_due_hours=48,
        notification_timeout=0.05,
    )


@pytest.fixture
def handlers(deps):
    return StepHandlerRegistry(deps)


def _step(kind, role="manager", due_hours=None, name="Step"):
    return StepSpec("step_1", name, StepKind(kind), role, due_hours, 1)


async def _count(db_session, model):
    return (await db_session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.unit
class TestNotificationHandler:
    async def test_sends_to_role_contact(self, handlers, notifier):
        result = await handlers.get(StepKind.NOTIFICATION).run(
            _step("notification", name="Management Notification"),
            {"incident": "INC-7"},
            "org-1",
            "exec-1",
        )
        assert result.output["message"] == "Notification sent to manager"
        assert result.output["address"] == "manager@example.com"
        assert result.output["delivery"]["delivered"] is True
        assert result.duration_ms >= 0

        sent = notifier.sent[0]
        assert sent["to"] == "manager@example.com"
        assert sent["subject"] == "Workflow Notification: Management Notification"
        assert sent["template"] == "workflow_step_notification"
        assert sent["data"]["workflow_context"] == {"incident": "INC-7"}
        assert sent["data"]["timestamp"] == T0.isoformat()

    async def test_org_override_wins(self, deps, notifier):
        deps.directory = RoleDirectory(
            contacts={"manager": "manager@example.com"},
            org_overrides={"org-1": {"manager": "lead@org1.example"}},
        )
        await StepHandlerRegistry(deps).get(StepKind.NOTIFICATION).run(
            _step("notification"), {}, "org-1"
        )
        assert notifier.sent[0]["to"] == "lead@org1.example"

    async def test_unknown_role_is_handler_error(self, handlers, notifier):
        with pytest.raises(HandlerError, match="No contact configured"):
            await handlers.get(StepKind.NOTIFICATION).run(_step("notification", role="auditor"), {}, "org-1")
        assert notifier.sent == []

    async def test_delivery_failure_is_transport_error(self, handlers, notifier):
        notifier.fail_for.add("manager@example.com")
        with pytest.raises(TransportError) as exc_info:
            await handlers.get(StepKind.NOTIFICATION).run(_step("notification"), {}, "org-1")
        assert exc_info.value.recipient == "manager@example.com"

    async def test_timeout_is_transport_error(self, handlers, notifier):
        notifier.hang_for.add("manager@example.com")
        with pytest.raises(TransportError, match="timed out"):
            await handlers.get(StepKind.NOTIFICATION).run(_step("notification"), {}, "org-1")


@pytest.mark.unit
class TestTaskHandler:
    async def test_creates_task_due_after_step_hours(self, handlers, db_session):
        result = await handlers.get(StepKind.TASK).run(
            _step("task", role="analyst", due_hours=1, name="Immediate Assessment"),
            {"incident": "INC-7"},
            "org-1",
            "exec-1",
        )
        task = await db_session.get(WorkflowTask, result.output["task_id"])
        assert task.name == "Immediate Assessment"
        assert task.status == WorkItemStatus.PENDING.value
        assert task.due_date == T0 + timedelta(hours=1)
        assert task.execution_id == "exec-1"
        assert task.context == {"incident": "INC-7"}
        assert result.output["message"] == "Task created: Immediate Assessment"
        assert result.output["due_date"] == (T0 + timedelta(hours=1)).isoformat()

    async def test_default_due_hours(self, handlers, db_session):
        result = await handlers.get(StepKind.TASK).run(_step("task", role="analyst"), {}, "org-1")
        task = await db_session.get(WorkflowTask, result.output["task_id"])
        assert task.due_date == T0 + timedelta(hours=24)


@pytest.mark.unit
class TestApprovalHandler:
    async def test_creates_approval_and_notifies(self, handlers, db_session, notifier):
        result = await handlers.get(StepKind.APPROVAL).run(
            _step("approval", due_hours=4, name="Manager Approval"), {}, "org-1", "exec-1"
        )
        approval = await db_session.get(ApprovalRequest, result.output["approval_id"])
        assert approval.title == "Manager Approval"
        assert approval.due_date == T0 + timedelta(hours=4)
        assert result.output["notification"]["delivered"] is True
        assert notifier.sent[0]["subject"] == "Approval Required: Manager Approval"
        assert notifier.sent[0]["data"]["approval_id"] == approval.id

    async def test_default_due_hours(self, handlers, db_session):
        result = await handlers.get(StepKind.APPROVAL).run(_step("approval"), {}, "org-1")
        approval = await db_session.get(ApprovalRequest, result.output["approval_id"])
        assert approval.due_date == T0 + timedelta(hours=48)

    async def test_notification_failure_keeps_approval(self, handlers, db_session, notifier):
        notifier.fail_all = True
        result = await handlers.get(StepKind.APPROVAL).run(_step("approval"), {}, "org-1")
        assert result.output["notification"]["delivered"] is False
        assert result.output["notification"]["recipient"] == "manager@example.com"
        assert await _count(db_session, ApprovalRequest) == 1

    async def test_unknown_role_creates_nothing(self, handlers, db_session):
        with pytest.raises(HandlerError):
            await handlers.get(StepKind.APPROVAL).run(_step("approval", role="auditor"), {}, "org-1")
        assert await _count(db_session, ApprovalRequest) == 0


@pytest.mark.unit
class TestEscalationHandler:
    async def test_escalate_first_level(self, handlers, notifier):
        output = await handlers.escalation.escalate(
            ["manager", "executive"], 0, "org-1", subject="Overdue task: Review"
        )
        assert output["escalation_level"] == 1
        assert output["target_role"] == "manager"
        assert output["escalated_at"] == T0.isoformat()

        sent = notifier.sent[0]
        assert sent["urgency"] == Urgency.CRITICAL.value
        assert sent["subject"] == "URGENT: Escalation Required - Overdue task: Review"
        assert sent["data"]["urgency"] == "high"
        assert sent["data"]["escalated_to"] == "manager"

    async def test_escalate_past_path_is_exhausted(self, handlers, notifier):
        with pytest.raises(EscalationExhaustedError) as exc_info:
            await handlers.escalation.escalate(["manager"], 1, "org-1", subject="x")
        assert exc_info.value.level == 1
        assert exc_info.value.path_length == 1
        assert notifier.sent == []

    async def test_execute_as_plan_step(self, handlers, notifier):
        result = await handlers.get(StepKind.ESCALATION).run(
            _step("escalation", role="executive", name="Executive Escalation"), {}, "org-1"
        )
        assert result.output["target_role"] == "executive"
        assert result.context_updates == {"escalation_level": 1}
        assert notifier.sent[0]["to"] == "executive@example.com"

    async def test_execute_uses_context_path(self, handlers, notifier):
        context = {"escalation_path": ["manager", "executive", "board"], "escalation_level": 1}
        result = await handlers.get(StepKind.ESCALATION).run(_step("escalation"), context, "org-1")
        assert result.output["target_role"] == "executive"
        assert result.context_updates == {"escalation_level": 2}

    async def test_execute_past_context_path(self, handlers):
        context = {"escalation_path": ["manager"], "escalation_level": 1}
        with pytest.raises(EscalationExhaustedError):
            await handlers.get(StepKind.ESCALATION).run(_step("escalation"), context, "org-1")


class _ExplodingHandler(BaseStepHandler):
    kind = StepKind.TASK

    async def execute(self, step, context, organization_id, execution_id=None) -> StepResult:
        raise RuntimeError("disk full")


@pytest.mark.unit
async def test_unexpected_exception_wrapped_in_handler_error(deps):
    with pytest.raises(HandlerError, match="Step failed: disk full") as exc_info:
        await _ExplodingHandler(deps).run(_step("task"), {}, "org-1")
    assert exc_info.value.step_id == "step_1"
    assert isinstance(exc_info.value.__cause__, RuntimeError)
