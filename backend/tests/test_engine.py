"""Tests for the workflow execution engine."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import T0, FakeNotifier
from core.constants import ExecutionStatus, LogStatus, ScheduledStepStatus, StepKind
from core.exceptions import ExecutionNotFoundError, InvalidStateError, ValidationError
from db.models.execution import Execution
from db.models.work_items import ApprovalRequest, WorkflowTask
from notifications.directory import RoleDirectory
from services.execution_service import ExecutionRepository, ScheduledStepRepository
from workflow.engine import ExecutionEngine, StepOutcome
from workflow.plans import StepPlanRegistry, build_plan


def _entries(timeline, status):
    return [e for e in timeline if e.status == status.value]


async def _timers(db_session, execution_id):
    return await ScheduledStepRepository(db_session).find_by_execution(execution_id)


@pytest.fixture
def plans():
    registry = StepPlanRegistry()
    registry.register("single_review", build_plan([("Quick Review", "task", "analyst", 2)]))
    registry.register(
        "approval_first",
        build_plan(
            [
                ("Sign-off", "approval", "auditor", 4),
                ("Archive", "task", "analyst", 1),
            ]
        ),
    )
    return registry


@pytest.fixture
def engine(db_session, notifier, directory, clock, wakeups, plans):
    return ExecutionEngine(
        db_session,
        notifier=notifier,
        directory=directory,
        plans=plans,
        clock=clock,
        wakeup=lambda timer_id, fire_at: wakeups.append((timer_id, fire_at)),
    )


@pytest.mark.integration
class TestSubmit:
    async def test_incident_response_runs_first_step_and_schedules_rest(
        self, engine, db_session, org_id, wakeups
    ):
        execution = await engine.submit("incident_response", {"incident": "INC-42"}, org_id)

        assert execution.status == ExecutionStatus.RUNNING.value
        assert execution.steps_count == 4
        assert execution.current_step_id == "step_1"
        assert execution.in_flight_step_id is None
        assert execution.started_at == T0
        assert execution.due_at == T0 + timedelta(hours=13)

        _, timeline = await engine.get_execution(execution.id, org_id)
        assert [(e.step_id, e.status) for e in timeline] == [
            ("step_1", "completed"),
            ("step_2", "scheduled"),
            ("step_3", "scheduled"),
            ("step_4", "scheduled"),
        ]
        first = timeline[0]
        assert first.step_name == "Immediate Assessment"
        assert first.input == {"incident": "INC-42"}
        assert first.output["message"] == "Task created: Immediate Assessment"

        scheduled = timeline[1]
        assert scheduled.step_name == "Management Notification (Scheduled)"
        assert scheduled.input == {
            "step_number": 2,
            "due_hours": None,
            "fire_at": (T0 + timedelta(hours=1)).isoformat(),
        }

        timers = await _timers(db_session, execution.id)
        assert [(t.step_id, t.fire_at) for t in timers] == [
            ("step_2", T0 + timedelta(hours=1)),
            ("step_3", T0 + timedelta(hours=1)),
            ("step_4", T0 + timedelta(hours=5)),
        ]
        assert all(t.status == ScheduledStepStatus.PENDING.value for t in timers)
        assert [w[0] for w in wakeups] == [t.id for t in timers]

        task = (await db_session.execute(select(WorkflowTask))).scalar_one()
        assert task.execution_id == execution.id
        assert task.due_date == T0 + timedelta(hours=1)

    async def test_single_step_plan_completes(self, engine, db_session, org_id, wakeups):
        execution = await engine.submit("single_review", {}, org_id)

        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.completed_at == T0
        _, timeline = await engine.get_execution(execution.id)
        assert [e.status for e in timeline] == ["completed"]
        assert await _timers(db_session, execution.id) == []
        assert wakeups == []

    async def test_unknown_category_uses_default_plan(self, engine, org_id):
        execution = await engine.submit("Vendor Onboarding", {}, org_id)
        assert execution.workflow_id == "Vendor Onboarding"
        assert execution.steps_count == 2
        assert execution.steps[0]["name"] == "Initial Processing"

    @pytest.mark.parametrize(
        "workflow_id, context, org",
        [
            ("", {}, "org-1"),
            ("incident_response", {}, None),
            ("incident_response", ["not", "a", "dict"], "org-1"),
        ],
    )
    async def test_invalid_request_persists_nothing(self, engine, db_session, workflow_id, context, org):
        with pytest.raises(ValidationError):
            await engine.submit(workflow_id, context, org)
        count = (await db_session.execute(select(func.count()).select_from(Execution))).scalar_one()
        assert count == 0

    async def test_wakeup_failure_does_not_fail_step(self, db_session, notifier, directory, clock, org_id):
        def broken_wakeup(timer_id, fire_at):
            raise ConnectionError("broker down")

        engine = ExecutionEngine(
            db_session, notifier=notifier, directory=directory, clock=clock, wakeup=broken_wakeup
        )
        execution = await engine.submit("incident_response", {}, org_id)
        assert execution.status == ExecutionStatus.RUNNING.value
        assert len(await _timers(db_session, execution.id)) == 3


@pytest.mark.integration
class TestScheduledSteps:
    async def test_steps_fire_in_order_until_completed(self, engine, db_session, clock, org_id, notifier):
        execution = await engine.submit("incident_response", {}, org_id)

        assert await engine.run_due_steps(T0 + timedelta(minutes=59)) == []

        clock.advance(hours=1)
        outcomes = await engine.run_due_steps()
        assert outcomes == [StepOutcome.CONTINUED, StepOutcome.CONTINUED]
        assert [n["to"] for n in notifier.sent] == ["manager@example.com", "manager@example.com"]
        assert notifier.sent[1]["subject"] == "Approval Required: Manager Approval"

        clock.advance(hours=4)
        assert await engine.run_due_steps() == [StepOutcome.COMPLETED]

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.COMPLETED.value
        assert execution.current_step_id == "step_4"
        assert execution.context == {"escalation_level": 1}
        completed = _entries(timeline, LogStatus.COMPLETED)
        assert [e.step_id for e in completed] == ["step_1", "step_2", "step_3", "step_4"]
        assert completed[-1].output["target_role"] == "executive"
        latest = {e.step_id: e.status for e in timeline if e.step_id}
        assert LogStatus.SCHEDULED.value not in latest.values()
        assert all(
            t.status == ScheduledStepStatus.FIRED.value
            for t in await _timers(db_session, execution.id)
        )

    async def test_later_timer_waits_for_earlier_one(self, engine, db_session, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        step_2, step_3, _ = await _timers(db_session, execution.id)

        assert await engine.fire_timer(step_3.id) == StepOutcome.SKIPPED
        timers = await _timers(db_session, execution.id)
        assert timers[1].status == ScheduledStepStatus.PENDING.value

        assert await engine.fire_timer(step_2.id) == StepOutcome.CONTINUED
        assert await engine.fire_timer(step_3.id) == StepOutcome.CONTINUED

    async def test_timer_fires_once(self, engine, db_session, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        step_2 = (await _timers(db_session, execution.id))[0]

        assert await engine.fire_timer(step_2.id) == StepOutcome.CONTINUED
        assert await engine.fire_timer(step_2.id) == StepOutcome.SKIPPED

        _, timeline = await engine.get_execution(execution.id)
        assert len([e for e in _entries(timeline, LogStatus.COMPLETED) if e.step_id == "step_2"]) == 1

    async def test_unknown_timer_is_skipped(self, engine):
        assert await engine.fire_timer("no-such-timer") == StepOutcome.SKIPPED


@pytest.mark.integration
class TestFailures:
    async def test_handler_error_on_first_step(self, engine, db_session, org_id):
        execution = await engine.submit("approval_first", {}, org_id)

        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.in_flight_step_id is None
        assert "auditor" in execution.error_message

        _, timeline = await engine.get_execution(execution.id)
        assert [(e.step_id, e.status) for e in timeline] == [("step_1", "failed")]
        assert timeline[0].error_detail == execution.error_message
        assert timeline[0].output["error_type"] == "HandlerError"
        assert await _timers(db_session, execution.id) == []
        count = (await db_session.execute(select(func.count()).select_from(ApprovalRequest))).scalar_one()
        assert count == 0

    async def test_handler_error_on_scheduled_step_stops_execution(
        self, db_session, notifier, clock, org_id
    ):
        directory = RoleDirectory(contacts={"analyst": "analyst@example.com"})
        engine = ExecutionEngine(db_session, notifier=notifier, directory=directory, clock=clock)
        execution = await engine.submit("incident_response", {}, org_id)

        clock.advance(hours=1)
        assert await engine.run_due_steps() == [StepOutcome.FAILED, StepOutcome.SKIPPED]

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.current_step_id == "step_2"
        failed = _entries(timeline, LogStatus.FAILED)
        assert [e.step_id for e in failed] == ["step_2"]

        superseded = _entries(timeline, LogStatus.CANCELLED)
        assert [(e.step_id, e.step_name) for e in superseded] == [
            ("step_3", "Manager Approval (Cancelled)"),
            ("step_4", "Executive Escalation (Cancelled)"),
        ]
        scheduled_ids = {e.step_id: e.id for e in _entries(timeline, LogStatus.SCHEDULED)}
        assert superseded[0].output == {"supersedes_log_id": scheduled_ids["step_3"]}

        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "cancelled", "cancelled"]

        clock.advance(hours=10)
        assert await engine.run_due_steps() == []

    async def test_transport_error_logs_failure_and_continues(self, engine, clock, org_id, notifier):
        notifier.fail_for.add("manager@example.com")
        execution = await engine.submit("incident_response", {}, org_id)

        clock.advance(hours=1)
        assert await engine.run_due_steps() == [StepOutcome.CONTINUED, StepOutcome.CONTINUED]

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.RUNNING.value
        step_2 = next(e for e in timeline if e.step_id == "step_2" and e.status == "failed")
        assert step_2.output == {"delivered": False, "recipient": "manager@example.com"}
        assert "Mailbox unavailable" in step_2.error_detail

        step_3 = next(e for e in timeline if e.step_id == "step_3" and e.status == "completed")
        assert step_3.output["notification"]["delivered"] is False


@pytest.mark.integration
class TestCancel:
    async def test_cancel_running_execution(self, engine, db_session, clock, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(minutes=30)

        execution = await engine.cancel(execution.id, org_id)
        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.completed_at == T0 + timedelta(minutes=30)

        _, timeline = await engine.get_execution(execution.id)
        final = next(e for e in timeline if e.step_id is None)
        assert final.step_name == "Execution cancelled"
        assert final.status == LogStatus.CANCELLED.value
        assert len([e for e in _entries(timeline, LogStatus.CANCELLED) if e.step_id]) == 3
        # earlier entries are never rewritten
        assert len(_entries(timeline, LogStatus.SCHEDULED)) == 3

        statuses = {t.status for t in await _timers(db_session, execution.id)}
        assert statuses == {ScheduledStepStatus.CANCELLED.value}

        clock.advance(hours=24)
        assert await engine.run_due_steps() == []

    async def test_cancel_terminal_execution(self, engine, org_id):
        execution = await engine.submit("single_review", {}, org_id)
        with pytest.raises(InvalidStateError, match="already completed"):
            await engine.cancel(execution.id, org_id)

    async def test_cancel_nonexistent_execution(self, engine, org_id):
        with pytest.raises(ExecutionNotFoundError):
            await engine.cancel("does-not-exist", org_id)

    async def test_cancel_other_organizations_execution(self, engine, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        with pytest.raises(ExecutionNotFoundError):
            await engine.cancel(execution.id, "another-org")

    async def test_cancel_while_step_in_flight(self, db_session, directory, clock, org_id):
        holder = {}

        class CancellingNotifier(FakeNotifier):
            async def send(self, *args, **kwargs):
                ack = await super().send(*args, **kwargs)
                execution = await holder["engine"].cancel(holder["id"], org_id)
                holder["during"] = (
                    execution.status,
                    execution.cancel_requested,
                    execution.in_flight_step_id,
                )
                return ack

        engine = ExecutionEngine(db_session, notifier=CancellingNotifier(), directory=directory, clock=clock)
        holder["engine"] = engine
        execution = await engine.submit("incident_response", {}, org_id)
        holder["id"] = execution.id

        clock.advance(hours=1)
        step_2 = (await _timers(db_session, execution.id))[0]
        assert await engine.fire_timer(step_2.id) == StepOutcome.CANCELLED
        assert holder["during"] == (ExecutionStatus.RUNNING.value, True, "step_2")

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.in_flight_step_id is None
        step_2_entries = [e for e in timeline if e.step_id == "step_2"]
        assert [e.status for e in step_2_entries] == ["scheduled", "completed"]
        assert any(e.step_name == "Execution cancelled" for e in timeline)

        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "cancelled", "cancelled"]


async def _crash_mid_step(db_session, execution_id, at, step_claimed=True):
    """Claim the next timer (and its step) the way a worker does, then stop."""
    timer = (await _timers(db_session, execution_id))[0]
    assert await ScheduledStepRepository(db_session).claim(timer.id, at)
    if step_claimed:
        assert await ExecutionRepository(db_session).claim_step(execution_id, timer.step_id, at)
    await db_session.commit()
    return timer


@pytest.mark.integration
class TestAbandonedSteps:
    async def test_cancel_completes_once_lease_expires(self, engine, db_session, clock, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(hours=1)
        await _crash_mid_step(db_session, execution.id, clock())

        execution = await engine.cancel(execution.id, org_id)
        assert execution.status == ExecutionStatus.RUNNING.value
        assert execution.cancel_requested is True

        clock.advance(minutes=10)
        assert await engine.run_due_steps() == []

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.in_flight_step_id is None
        step_2 = [e for e in timeline if e.step_id == "step_2"]
        assert [e.status for e in step_2] == ["scheduled", "failed"]
        assert "abandoned" in step_2[-1].error_detail
        assert any(e.step_name == "Execution cancelled" for e in timeline)

        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "cancelled", "cancelled"]
        with pytest.raises(InvalidStateError, match="already cancelled"):
            await engine.cancel(execution.id, org_id)

    async def test_cancel_after_lease_reclaims_at_once(self, engine, db_session, clock, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(hours=1)
        await _crash_mid_step(db_session, execution.id, clock())
        clock.advance(minutes=10)

        execution = await engine.cancel(execution.id, org_id)

        assert execution.status == ExecutionStatus.CANCELLED.value
        assert execution.in_flight_step_id is None
        assert execution.in_flight_since is None

    async def test_abandoned_step_fails_execution(self, engine, db_session, clock, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(hours=1)
        await _crash_mid_step(db_session, execution.id, clock())

        clock.advance(minutes=10)
        assert await engine.reclaim_abandoned() == 1

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert execution.current_step_id == "step_2"
        assert execution.error_message == (
            "Step Management Notification abandoned: no result within 300s of its claim"
        )
        superseded = _entries(timeline, LogStatus.CANCELLED)
        assert [e.step_id for e in superseded] == ["step_3", "step_4"]
        latest = {e.step_id: e.status for e in timeline if e.step_id}
        assert LogStatus.SCHEDULED.value not in latest.values()

        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "cancelled", "cancelled"]
        clock.advance(hours=10)
        assert await engine.run_due_steps() == []

    async def test_timer_claimed_before_step_started_fires_again(
        self, engine, db_session, clock, org_id, notifier
    ):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(hours=1)
        await _crash_mid_step(db_session, execution.id, clock(), step_claimed=False)

        clock.advance(minutes=10)
        assert await engine.run_due_steps() == [StepOutcome.CONTINUED, StepOutcome.CONTINUED]

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.RUNNING.value
        assert [e.step_id for e in _entries(timeline, LogStatus.COMPLETED)] == [
            "step_1",
            "step_2",
            "step_3",
        ]
        assert len(notifier.sent) == 2
        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "fired", "pending"]

    async def test_claim_within_lease_left_alone(self, engine, db_session, clock, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        clock.advance(hours=1)
        await _crash_mid_step(db_session, execution.id, clock())

        clock.advance(minutes=1)
        assert await engine.run_due_steps() == [StepOutcome.SKIPPED]

        execution, _ = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.RUNNING.value
        assert execution.in_flight_step_id == "step_2"
        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["firing", "pending", "pending"]

    async def test_late_result_after_reclaim_is_discarded(self, db_session, directory, clock, org_id):
        holder = {}

        class StalledNotifier(FakeNotifier):
            async def send(self, *args, **kwargs):
                # the worker stalls past its lease and the poller reclaims the step
                clock.advance(minutes=10)
                holder["reclaimed"] = await holder["engine"].reclaim_abandoned()
                return await super().send(*args, **kwargs)

        engine = ExecutionEngine(db_session, notifier=StalledNotifier(), directory=directory, clock=clock)
        holder["engine"] = engine
        execution = await engine.submit("incident_response", {}, org_id)

        clock.advance(hours=1)
        step_2 = (await _timers(db_session, execution.id))[0]
        assert await engine.fire_timer(step_2.id) == StepOutcome.SKIPPED
        assert holder["reclaimed"] == 1

        execution, timeline = await engine.get_execution(execution.id)
        assert execution.status == ExecutionStatus.FAILED.value
        assert [e.status for e in timeline if e.step_id == "step_2"] == ["scheduled", "failed"]
        statuses = [t.status for t in await _timers(db_session, execution.id)]
        assert statuses == ["fired", "cancelled", "cancelled"]


@pytest.mark.integration
class TestReplay:
    async def test_replay_failed_execution(self, db_session, notifier, clock, org_id):
        directory = RoleDirectory(contacts={"analyst": "analyst@example.com"})
        engine = ExecutionEngine(db_session, notifier=notifier, directory=directory, clock=clock)
        original = await engine.submit(
            "incident_response", {"incident": "INC-9", "escalation_level": 3}, org_id
        )
        clock.advance(hours=1)
        await engine.run_due_steps()

        replay = await engine.replay(original.id, org_id)

        assert replay.id != original.id
        assert replay.replay_of == original.id
        assert replay.workflow_id == "incident_response"
        assert replay.context == {"incident": "INC-9"}
        assert replay.status == ExecutionStatus.RUNNING.value

        original, _ = await engine.get_execution(original.id)
        assert original.status == ExecutionStatus.FAILED.value

    async def test_replay_running_execution_rejected(self, engine, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        with pytest.raises(InvalidStateError, match="Only failed or cancelled"):
            await engine.replay(execution.id, org_id)


@pytest.mark.integration
class TestLogImmutability:
    async def test_append_log_to_terminal_execution_rejected(self, engine, org_id):
        execution = await engine.submit("single_review", {}, org_id)
        with pytest.raises(InvalidStateError, match="terminal state completed"):
            await engine.append_log(execution.id, "step_1", "Late entry", LogStatus.COMPLETED)

    async def test_append_log_to_unknown_execution(self, engine):
        with pytest.raises(ExecutionNotFoundError):
            await engine.append_log("missing", None, "Orphan", LogStatus.COMPLETED)

    async def test_append_log_to_running_execution(self, engine, org_id, clock):
        execution = await engine.submit("incident_response", {}, org_id)
        entry = await engine.append_log(
            execution.id, "step_1", "Operator note", LogStatus.COMPLETED, output={"at": clock()}
        )
        assert entry.id is not None
        assert entry.output == {"at": T0.isoformat()}

    async def test_get_execution_scoped_to_organization(self, engine, org_id):
        execution = await engine.submit("incident_response", {}, org_id)
        with pytest.raises(ExecutionNotFoundError):
            await engine.get_execution(execution.id, "another-org")

    async def test_step_kinds_recorded_in_snapshot(self, engine, org_id):
        execution = await engine.submit("kri_breach", {}, org_id)
        assert [s["kind"] for s in execution.steps] == [
            StepKind.TASK.value,
            StepKind.NOTIFICATION.value,
            StepKind.TASK.value,
            StepKind.ESCALATION.value,
        ]
