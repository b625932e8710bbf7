"""Workflow Execution Engine: step-plan runner with durable timers.

Takes a workflow identifier and a context, resolves the step plan, runs
the first step immediately and schedules the rest on durable timers
(``scheduled_steps`` rows). Each timer, when due, re-enters the same
step logic.

State machine:

    pending -> running -> completed | failed | cancelled

Rules enforced here:

- Steps of one execution run strictly one after another. A step is
  claimed by setting ``in_flight_step_id`` with a conditional UPDATE, and a
  timer is only claimed once no earlier timer of the same execution is
  still pending or firing.
- A ``HandlerError`` writes one ``failed`` log entry, then fails the
  execution. No further step runs and outstanding timers are cancelled.
- A ``TransportError`` (notification dispatch only) logs the step as
  ``failed`` and the execution carries on.
- Cancellation is cooperative. With no step in flight the execution is
  cancelled at once; otherwise the in-flight step finishes, its result is
  logged, and the execution is cancelled afterwards.
- Terminal executions are immutable: logging against one raises
  ``InvalidStateError``. Outstanding ``scheduled`` entries are superseded
  by ``cancelled`` entries when an execution ends early.
- A step claim is a lease. A step still in flight ``lease_seconds`` after
  its claim belongs to a dead worker: it is logged ``failed`` and its
  execution fails, or is cancelled when a cancel is pending.

The engine commits at each step boundary so concurrent workers, the API
and the SLA tracker see a consistent row.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import (
    ACTIVE_STATUSES,
    ExecutionStatus,
    LogStatus,
    ScheduledStepStatus,
)
from core.exceptions import (
    ExecutionNotFoundError,
    HandlerError,
    InvalidStateError,
    TransportError,
    ValidationError,
)
from core.logging_config import bind_execution
from core.utils import add_hours, json_safe, utc_now
from db.models.execution import Execution
from db.models.execution_log import ExecutionLog
from notifications.directory import RoleDirectory
from services.execution_service import (
    ExecutionLogRepository,
    ExecutionRepository,
    ScheduledStepRepository,
)
from workflow.handlers import HandlerDependencies, StepHandlerRegistry
from workflow.plans import (
    StepPlanRegistry,
    StepSpec,
    fire_offsets,
    get_plan_registry,
    plan_due_hours,
)

logger = structlog.get_logger(__name__)

# Context keys the engine maintains itself; dropped when replaying.
ENGINE_CONTEXT_KEYS = frozenset({"escalation_level"})

REPLAYABLE_STATUSES = frozenset({ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value})


class StepOutcome(str, Enum):
    """What happened when the engine tried to run a step."""
    CONTINUED = "continued"  # step done, more steps scheduled
    COMPLETED = "completed"  # last step done, execution completed
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"      # step could not be claimed


class ExecutionEngine:
    """Runs executions against one database session.

    Args:
        db: Session the engine commits on
        notifier: Notification collaborator (``NotificationManager``-compatible)
        directory: Role -> contact resolution
        plans: Step plan registry (default: the process-wide registry)
        clock: Returns naive-UTC "now"; injectable for tests
        wakeup: Optional callback ``(timer_id, fire_at)`` invoked after a
            timer is committed, to nudge a worker at the fire time
        lease_seconds: How long a claimed step may run before it is
            reclaimed as abandoned (default: STEP_LEASE_SECONDS)
    """

    def __init__(
        self,
        db: AsyncSession,
        notifier: Any,
        directory: RoleDirectory,
        plans: Optional[StepPlanRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        wakeup: Optional[Callable[[str, datetime], None]] = None,
        lease_seconds: Optional[float] = None,
    ):
        self.db = db
        self.clock = clock
        self.lease_seconds = lease_seconds or get_settings().STEP_LEASE_SECONDS
        self.plans = plans or get_plan_registry()
        self.handlers = StepHandlerRegistry(
            HandlerDependencies.from_settings(db, notifier, directory, clock)
        )
        self.executions = ExecutionRepository(db)
        self.logs = ExecutionLogRepository(db)
        self.timers = ScheduledStepRepository(db)
        self._wakeup = wakeup

    # ─── Submit ───────────────────────────────────────────

    async def submit(
        self,
        workflow_id: str,
        context: Optional[dict] = None,
        organization_id: Optional[str] = None,
        replay_of: Optional[str] = None,
    ) -> Execution:
        """Create an execution, run its first step and schedule the rest.

        Raises:
            ValidationError: missing organization, bad context or empty
                workflow identifier; nothing is persisted
        """
        if not organization_id:
            raise ValidationError("organization_id is required")
        if context is None:
            context = {}
        if not isinstance(context, dict):
            raise ValidationError("context must be an object")

        steps = self.plans.resolve(workflow_id)

        execution = await self.executions.insert(
            {
                "organization_id": organization_id,
                "workflow_id": workflow_id,
                "status": ExecutionStatus.PENDING.value,
                "context": json_safe(context),
                "steps": [s.to_dict() for s in steps],
                "steps_count": len(steps),
                "replay_of": replay_of,
            }
        )
        execution_id = execution.id
        await self.db.commit()

        with bind_execution(execution_id, organization_id):
            now = self.clock()
            started = await self.executions.transition(
                execution_id,
                [ExecutionStatus.PENDING.value],
                ExecutionStatus.RUNNING.value,
                started_at=now,
                current_step_id=steps[0].step_id,
                due_at=add_hours(now, plan_due_hours(steps)),
            )
            await self.db.commit()
            if not started:
                logger.info("Execution no longer pending, not started")
                return await self._reload(execution_id)

            logger.info(
                "Execution started",
                workflow_id=workflow_id,
                steps_count=len(steps),
                replay_of=replay_of,
            )
            await self._run_step(execution_id, steps[0], remaining=steps[1:], submitted_at=now)

        return await self._reload(execution_id)

    # ─── Scheduled steps ──────────────────────────────────

    async def run_due_steps(self, now: Optional[datetime] = None, limit: int = 100) -> list[StepOutcome]:
        """Fire every timer due at ``now``, in (fire_at, ordinal) order."""
        now = now or self.clock()
        await self.reclaim_abandoned(now)
        # ids only: a failing step rolls back and expires loaded rows
        timer_ids = [timer.id for timer in await self.timers.find_due(now, limit)]
        outcomes: list[StepOutcome] = []
        for timer_id in timer_ids:
            outcomes.append(await self.fire_timer(timer_id))
        return outcomes

    async def fire_timer(self, timer_id: str) -> StepOutcome:
        """Claim one timer and run its step.

        Safe to call from several workers at once; only one claim succeeds.
        """
        timer = await self.timers.find_by_id(timer_id)
        if timer is None or timer.status != ScheduledStepStatus.PENDING.value:
            return StepOutcome.SKIPPED

        execution_id, step_id = timer.execution_id, timer.step_id
        claimed = await self.timers.claim(timer_id, self.clock())
        await self.db.commit()
        if not claimed:
            return StepOutcome.SKIPPED

        execution = await self._reload(execution_id)
        step = self._step_of(execution, step_id)

        with bind_execution(execution_id, execution.organization_id):
            if execution.is_terminal or step is None:
                logger.info("Timer dropped", step_id=step_id, status=execution.status)
                outcome = StepOutcome.SKIPPED
            else:
                outcome = await self._run_step(execution_id, step)

        final_status = (
            ScheduledStepStatus.CANCELLED
            if outcome == StepOutcome.SKIPPED
            else ScheduledStepStatus.FIRED
        )
        await self.timers.finish(timer_id, final_status)
        await self.db.commit()
        return outcome

    async def reclaim_abandoned(self, now: Optional[datetime] = None) -> int:
        """Close out steps whose worker died before recording a result.

        Steps claimed more than ``lease_seconds`` ago are logged as failed
        and their execution ends. Timers left in ``firing`` are then settled:
        fired once their step has a result, cancelled when the execution has
        ended, otherwise returned to pending so the step fires again.

        Returns:
            Number of abandoned steps reclaimed
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.lease_seconds)

        stale = [
            (e.id, e.in_flight_step_id, e.in_flight_since)
            for e in await self.executions.find_stale_in_flight(cutoff)
        ]
        reclaimed = 0
        for execution_id, step_id, since in stale:
            if await self._abandon(execution_id, step_id, since, now):
                reclaimed += 1

        timers = [
            (t.id, t.execution_id, t.step_id, t.claimed_at)
            for t in await self.timers.find_stale_firing(cutoff)
        ]
        for timer_id, execution_id, step_id, claimed_at in timers:
            await self._settle_timer(timer_id, execution_id, step_id, claimed_at)
        return reclaimed

    async def _settle_timer(
        self,
        timer_id: str,
        execution_id: str,
        step_id: str,
        claimed_at: datetime,
    ) -> None:
        execution = await self._reload(execution_id)
        if execution.in_flight_step_id == step_id:
            # Step claimed after the timer; its own lease has not run out yet.
            return
        latest = (await self.logs.latest_by_step(execution_id)).get(step_id)
        if latest is not None and latest.status in (
            LogStatus.COMPLETED.value,
            LogStatus.FAILED.value,
        ):
            await self.timers.finish(timer_id, ScheduledStepStatus.FIRED)
            settled = ScheduledStepStatus.FIRED
        elif execution.is_terminal:
            await self.timers.finish(timer_id, ScheduledStepStatus.CANCELLED)
            settled = ScheduledStepStatus.CANCELLED
        else:
            await self.timers.requeue(timer_id, claimed_at)
            settled = ScheduledStepStatus.PENDING
        await self.db.commit()
        logger.warning(
            "Stale timer settled",
            timer_id=timer_id,
            execution_id=execution_id,
            step_id=step_id,
            status=settled.value,
        )

    # ─── Cancel / replay ──────────────────────────────────

    async def cancel(self, execution_id: str, organization_id: Optional[str] = None) -> Execution:
        """Cancel a pending or running execution.

        Raises:
            ExecutionNotFoundError: unknown execution (or another org's)
            InvalidStateError: execution already terminal
        """
        execution = await self._get_scoped(execution_id, organization_id)
        if execution.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} is already {execution.status}")

        await self.executions.request_cancel(execution_id)
        await self.db.commit()

        execution = await self._reload(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(f"Execution {execution_id} is already {execution.status}")

        with bind_execution(execution_id, execution.organization_id):
            if execution.in_flight_step_id is None:
                await self._finalize_cancel(execution_id)
            elif self._lease_expired(execution):
                await self._abandon(
                    execution_id,
                    execution.in_flight_step_id,
                    execution.in_flight_since,
                    self.clock(),
                )
            else:
                logger.info(
                    "Cancellation requested, waiting for in-flight step",
                    step_id=execution.in_flight_step_id,
                )
        return await self._reload(execution_id)

    async def replay(self, execution_id: str, organization_id: Optional[str] = None) -> Execution:
        """Start a fresh execution with the same workflow and context.

        Only failed or cancelled executions can be replayed; the original
        is left untouched.
        """
        original = await self._get_scoped(execution_id, organization_id)
        if original.status not in REPLAYABLE_STATUSES:
            raise InvalidStateError(
                f"Only failed or cancelled executions can be replayed (status: {original.status})"
            )
        context = {
            k: v for k, v in (original.context or {}).items() if k not in ENGINE_CONTEXT_KEYS
        }
        logger.info("Replaying execution", execution_id=execution_id)
        return await self.submit(
            original.workflow_id,
            context,
            original.organization_id,
            replay_of=execution_id,
        )

    # ─── Queries ──────────────────────────────────────────

    async def get_execution(
        self,
        execution_id: str,
        organization_id: Optional[str] = None,
    ) -> tuple[Execution, Sequence[ExecutionLog]]:
        """Execution plus its log in chronological order.

        The log is append-only, so earlier ``scheduled`` entries stay in
        place. For a terminal execution the latest entry of every step is
        never ``scheduled``: the step ran, or a ``cancelled`` entry
        supersedes the schedule.
        """
        execution = await self._get_scoped(execution_id, organization_id)
        return execution, await self.logs.timeline(execution_id)

    async def append_log(
        self,
        execution_id: str,
        step_id: Optional[str],
        step_name: str,
        status: LogStatus,
        started_at: Optional[datetime] = None,
        input: Optional[dict] = None,
        output: Optional[dict] = None,
        error_detail: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> ExecutionLog:
        """Append a log entry to a non-terminal execution.

        Raises:
            ExecutionNotFoundError: unknown execution
            InvalidStateError: execution is terminal
        """
        execution = await self.executions.find_by_id(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(
                f"Cannot log against execution {execution_id} in terminal state {execution.status}"
            )
        return await self.logs.append(
            execution_id=execution_id,
            step_id=step_id,
            step_name=step_name,
            status=LogStatus(status).value,
            started_at=started_at or self.clock(),
            input=json_safe(input) if input is not None else None,
            output=json_safe(output) if output is not None else None,
            error_detail=error_detail,
            completed_at=completed_at,
        )

    # ─── Step execution ───────────────────────────────────

    async def _run_step(
        self,
        execution_id: str,
        step: StepSpec,
        remaining: Sequence[StepSpec] = (),
        submitted_at: Optional[datetime] = None,
    ) -> StepOutcome:
        started_at = self.clock()
        claimed = await self.executions.claim_step(execution_id, step.step_id, started_at)
        await self.db.commit()
        if not claimed:
            logger.info("Step not claimed", step_id=step.step_id)
            return StepOutcome.SKIPPED

        execution = await self._reload(execution_id)
        organization_id = execution.organization_id
        steps_count = execution.steps_count
        context = dict(execution.context or {})
        handler = self.handlers.get(step.kind)

        try:
            result = await handler.run(step, context, organization_id, execution_id)
        except HandlerError as e:
            await self.db.rollback()
            try:
                await self._fail(execution_id, step, context, started_at, e)
            except InvalidStateError:
                return await self._claim_lost(step)
            return StepOutcome.FAILED
        except TransportError as e:
            # Dispatch-only failure: recorded against this step, execution continues.
            await self.db.rollback()
            status = LogStatus.FAILED
            output = {"delivered": False, "recipient": e.recipient}
            error_detail = e.message
            context_updates: dict = {}
        else:
            status = LogStatus.COMPLETED
            output = result.output
            error_detail = None
            context_updates = result.context_updates

        try:
            await self.append_log(
                execution_id,
                step.step_id,
                step.name,
                status,
                started_at=started_at,
                input=context,
                output=output,
                error_detail=error_detail,
                completed_at=self.clock(),
            )

            timers = []
            if remaining:
                timers = await self._schedule(
                    execution_id, step, remaining, submitted_at or started_at
                )

            released = await self.executions.release_step(
                execution_id,
                step.step_id,
                current_step_id=step.step_id,
                context=json_safe({**context, **context_updates}),
            )
        except InvalidStateError:
            released = False
        if not released:
            return await self._claim_lost(step)
        await self.db.commit()
        logger.info("Step logged", step_id=step.step_id, status=status.value)

        execution = await self._reload(execution_id)
        if execution.cancel_requested and not execution.is_terminal:
            await self._finalize_cancel(execution_id)
            return StepOutcome.CANCELLED

        if step.ordinal >= steps_count:
            return await self._complete(execution_id)

        for timer in timers:
            self._notify_wakeup(timer.id, timer.fire_at)
        return StepOutcome.CONTINUED

    async def _schedule(
        self,
        execution_id: str,
        current: StepSpec,
        remaining: Sequence[StepSpec],
        submitted_at: datetime,
    ) -> list:
        """Write ``scheduled`` entries and timers for the steps after ``current``."""
        plan = [current, *remaining]
        offsets = fire_offsets(plan)
        now = self.clock()
        timers = []
        for step, offset in zip(plan[1:], offsets[1:]):
            fire_at = add_hours(submitted_at, offset)
            await self.append_log(
                execution_id,
                step.step_id,
                f"{step.name} (Scheduled)",
                LogStatus.SCHEDULED,
                started_at=now,
                input={
                    "step_number": step.ordinal,
                    "due_hours": step.due_hours,
                    "fire_at": fire_at,
                },
            )
            timers.append(
                await self.timers.enqueue(execution_id, step.step_id, step.ordinal, fire_at)
            )
            logger.info("Step scheduled", step_id=step.step_id, fire_at=fire_at.isoformat())
        return timers

    async def _fail(
        self,
        execution_id: str,
        step: StepSpec,
        context: dict,
        started_at: datetime,
        error: HandlerError,
    ) -> None:
        now = self.clock()
        await self.append_log(
            execution_id,
            step.step_id,
            step.name,
            LogStatus.FAILED,
            started_at=started_at,
            input=context,
            output={"error_type": type(error).__name__, **error.details},
            error_detail=error.message,
            completed_at=now,
        )
        await self.executions.transition(
            execution_id,
            [ExecutionStatus.RUNNING.value],
            ExecutionStatus.FAILED.value,
            in_flight_step_id=None,
            in_flight_since=None,
            current_step_id=step.step_id,
            completed_at=now,
            error_message=error.message,
        )
        await self._close_out(execution_id, now)
        await self.db.commit()
        logger.error("Execution failed", step_id=step.step_id, error=error.message)

    async def _complete(self, execution_id: str) -> StepOutcome:
        completed = await self.executions.compare_and_set(
            execution_id,
            expected={
                "status": ExecutionStatus.RUNNING.value,
                "in_flight_step_id": None,
                "cancel_requested": False,
            },
            values={
                "status": ExecutionStatus.COMPLETED.value,
                "completed_at": self.clock(),
            },
        )
        await self.db.commit()
        if completed:
            logger.info("Execution completed")
            return StepOutcome.COMPLETED

        execution = await self._reload(execution_id)
        if execution.cancel_requested and not execution.is_terminal:
            await self._finalize_cancel(execution_id)
            return StepOutcome.CANCELLED
        return StepOutcome(execution.status) if execution.is_terminal else StepOutcome.SKIPPED

    async def _finalize_cancel(self, execution_id: str) -> bool:
        """Write the closing entries and move the execution to cancelled.

        All of it lands in one transaction; if another writer got the
        execution to a terminal state first, everything is rolled back.
        """
        now = self.clock()
        await self.append_log(
            execution_id,
            None,
            "Execution cancelled",
            LogStatus.CANCELLED,
            started_at=now,
            completed_at=now,
        )
        await self._close_out(execution_id, now)
        won = await self.executions.compare_and_set(
            execution_id,
            expected={"status": tuple(ACTIVE_STATUSES), "in_flight_step_id": None},
            values={"status": ExecutionStatus.CANCELLED.value, "completed_at": now},
        )
        if not won:
            await self.db.rollback()
            logger.info("Cancellation lost to a concurrent transition")
            return False
        await self.db.commit()
        logger.info("Execution cancelled")
        return True

    async def _close_out(self, execution_id: str, now: datetime) -> None:
        """Cancel pending timers and supersede outstanding ``scheduled`` entries."""
        cancelled = await self.timers.cancel_pending(execution_id)
        latest = await self.logs.latest_by_step(execution_id)
        for step_id, entry in latest.items():
            if entry.status != LogStatus.SCHEDULED.value:
                continue
            await self.logs.append(
                execution_id=execution_id,
                step_id=step_id,
                step_name=entry.step_name.replace("(Scheduled)", "(Cancelled)"),
                status=LogStatus.CANCELLED.value,
                started_at=now,
                input=entry.input,
                output={"supersedes_log_id": entry.id},
                completed_at=now,
            )
        if cancelled:
            logger.info("Pending timers cancelled", count=cancelled)

    # ─── Abandoned steps ──────────────────────────────────

    async def _abandon(
        self,
        execution_id: str,
        step_id: str,
        claimed_at: datetime,
        now: datetime,
    ) -> bool:
        """Release a step whose claim outlived its lease and end the execution.

        The release is a conditional UPDATE on the exact claim, so a worker
        that finishes late and a concurrent reclaim cannot both win.
        """
        execution = await self._reload(execution_id)
        step = self._step_of(execution, step_id)
        step_name = step.name if step else step_id
        cancel_requested = execution.cancel_requested

        with bind_execution(execution_id, execution.organization_id):
            released = await self.executions.compare_and_set(
                execution_id,
                expected={
                    "status": ExecutionStatus.RUNNING.value,
                    "in_flight_step_id": step_id,
                    "in_flight_since": claimed_at,
                },
                values={"in_flight_step_id": None, "in_flight_since": None},
            )
            if not released:
                await self.db.rollback()
                return False

            message = (
                f"Step {step_name} abandoned: no result within "
                f"{int(self.lease_seconds)}s of its claim"
            )
            await self.append_log(
                execution_id,
                step_id,
                step_name,
                LogStatus.FAILED,
                started_at=claimed_at,
                output={"error_type": "StepAbandoned", "claimed_at": claimed_at},
                error_detail=message,
                completed_at=now,
            )
            logger.error("Abandoned step reclaimed", step_id=step_id, claimed_at=claimed_at.isoformat())

            if cancel_requested:
                return await self._finalize_cancel(execution_id)

            await self.executions.transition(
                execution_id,
                [ExecutionStatus.RUNNING.value],
                ExecutionStatus.FAILED.value,
                current_step_id=step_id,
                completed_at=now,
                error_message=message,
            )
            await self._close_out(execution_id, now)
            await self.db.commit()
            logger.error("Execution failed", step_id=step_id, error=message)
            return True

    async def _claim_lost(self, step: StepSpec) -> StepOutcome:
        """Drop a step result whose claim was reclaimed while it ran."""
        await self.db.rollback()
        logger.warning("Step claim lost, result discarded", step_id=step.step_id)
        return StepOutcome.SKIPPED

    def _lease_expired(self, execution: Execution) -> bool:
        since = execution.in_flight_since
        return since is not None and since < self.clock() - timedelta(seconds=self.lease_seconds)

    # ─── Helpers ──────────────────────────────────────────

    async def _reload(self, execution_id: str) -> Execution:
        execution = await self.executions.find_by_id(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _get_scoped(self, execution_id: str, organization_id: Optional[str]) -> Execution:
        execution = await self.executions.find_by_id(execution_id)
        if execution is None or (
            organization_id is not None and execution.organization_id != organization_id
        ):
            raise ExecutionNotFoundError(execution_id)
        return execution

    @staticmethod
    def _step_of(execution: Execution, step_id: str) -> Optional[StepSpec]:
        for data in execution.steps or []:
            if data.get("step_id") == step_id:
                return StepSpec.from_dict(data)
        return None

    def _notify_wakeup(self, timer_id: str, fire_at: datetime) -> None:
        if self._wakeup is None:
            return
        try:
            self._wakeup(timer_id, fire_at)
        except Exception as e:
            # The timer row is durable; the poller picks it up regardless.
            logger.warning("Wake-up hint failed", timer_id=timer_id, error=str(e))
