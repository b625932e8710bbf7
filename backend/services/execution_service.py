"""Execution, execution-log and scheduled-step persistence.

Every status change on an execution goes through a conditional UPDATE so
that the API, the step workers and the SLA tracker can act on the same
row without clobbering one another.
"""

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from core.constants import ACTIVE_STATUSES, ExecutionStatus, ScheduledStepStatus
from db.models.execution import Execution
from db.models.execution_log import ExecutionLog
from db.models.scheduled_step import ScheduledStep
from services.base import BaseRepository, TrackedRepository


class ExecutionRepository(TrackedRepository[Execution]):
    """Execution rows and their guarded state transitions."""

    due_column = "due_at"
    open_status = ExecutionStatus.RUNNING.value

    def __init__(self, db: AsyncSession):
        super().__init__(Execution, db)

    async def transition(
        self,
        id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **values: Any,
    ) -> bool:
        """Move the execution to ``to_status`` if it is in one of ``from_statuses``."""
        return await self.compare_and_set(
            id,
            expected={"status": tuple(from_statuses)},
            values={"status": to_status, **values},
        )

    async def claim_step(self, id: str, step_id: str, at: datetime) -> bool:
        """Mark ``step_id`` as in flight since ``at``.

        Fails if the execution is not running, another step is in flight, or
        a cancel has been requested.
        """
        return await self.compare_and_set(
            id,
            expected={
                "status": ExecutionStatus.RUNNING.value,
                "in_flight_step_id": None,
                "cancel_requested": False,
            },
            values={"in_flight_step_id": step_id, "in_flight_since": at},
        )

    async def release_step(self, id: str, step_id: str, **values: Any) -> bool:
        """Clear the in-flight marker set by :meth:`claim_step`."""
        return await self.compare_and_set(
            id,
            expected={"in_flight_step_id": step_id},
            values={"in_flight_step_id": None, "in_flight_since": None, **values},
        )

    async def find_stale_in_flight(self, cutoff: datetime, limit: int = 100) -> Sequence[Execution]:
        """Running executions whose in-flight step was claimed before ``cutoff``."""
        query = (
            select(Execution)
            .where(
                Execution.status == ExecutionStatus.RUNNING.value,
                Execution.in_flight_step_id.is_not(None),
                Execution.in_flight_since < cutoff,
            )
            .order_by(Execution.in_flight_since.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def request_cancel(self, id: str) -> bool:
        return await self.compare_and_set(
            id,
            expected={"status": tuple(ACTIVE_STATUSES), "cancel_requested": False},
            values={"cancel_requested": True},
        )


class ExecutionLogRepository(BaseRepository[ExecutionLog]):
    """Append-only step audit trail."""

    def __init__(self, db: AsyncSession):
        super().__init__(ExecutionLog, db)

    async def append(
        self,
        execution_id: str,
        step_id: Optional[str],
        step_name: str,
        status: str,
        started_at: datetime,
        input: Optional[dict] = None,
        output: Optional[dict] = None,
        error_detail: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> ExecutionLog:
        return await self.insert(
            {
                "execution_id": execution_id,
                "step_id": step_id,
                "step_name": step_name,
                "status": status,
                "input": input,
                "output": output,
                "error_detail": error_detail,
                "started_at": started_at,
                "completed_at": completed_at,
            }
        )

    async def timeline(self, execution_id: str) -> Sequence[ExecutionLog]:
        """All entries for an execution, in the order they happened."""
        query = (
            select(ExecutionLog)
            .where(ExecutionLog.execution_id == execution_id)
            .order_by(ExecutionLog.started_at.asc(), ExecutionLog.id.asc())
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def latest_by_step(self, execution_id: str) -> dict[str, ExecutionLog]:
        """Most recent entry per step, keyed by step id."""
        latest: dict[str, ExecutionLog] = {}
        query = (
            select(ExecutionLog)
            .where(
                ExecutionLog.execution_id == execution_id,
                ExecutionLog.step_id.is_not(None),
            )
            .order_by(ExecutionLog.id.asc())
        )
        result = await self.db.execute(query)
        for entry in result.scalars().all():
            latest[entry.step_id] = entry
        return latest


class ScheduledStepRepository(BaseRepository[ScheduledStep]):
    """Durable timers for steps 2..n of an execution."""

    def __init__(self, db: AsyncSession):
        super().__init__(ScheduledStep, db)

    async def enqueue(
        self,
        execution_id: str,
        step_id: str,
        ordinal: int,
        fire_at: datetime,
    ) -> ScheduledStep:
        return await self.insert(
            {
                "execution_id": execution_id,
                "step_id": step_id,
                "ordinal": ordinal,
                "fire_at": fire_at,
                "status": ScheduledStepStatus.PENDING.value,
            }
        )

    async def find_due(self, now: datetime, limit: int = 100) -> Sequence[ScheduledStep]:
        """Pending timers due at ``now``, in firing order."""
        query = (
            select(ScheduledStep)
            .where(
                ScheduledStep.status == ScheduledStepStatus.PENDING.value,
                ScheduledStep.fire_at <= now,
            )
            .order_by(ScheduledStep.fire_at.asc(), ScheduledStep.ordinal.asc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def find_by_execution(self, execution_id: str) -> Sequence[ScheduledStep]:
        query = (
            select(ScheduledStep)
            .where(ScheduledStep.execution_id == execution_id)
            .order_by(ScheduledStep.ordinal.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def find_stale_firing(self, cutoff: datetime, limit: int = 100) -> Sequence[ScheduledStep]:
        """Timers claimed before ``cutoff`` that never reached a final status."""
        query = (
            select(ScheduledStep)
            .where(
                ScheduledStep.status == ScheduledStepStatus.FIRING.value,
                ScheduledStep.claimed_at < cutoff,
            )
            .order_by(ScheduledStep.claimed_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def claim(self, id: str, now: datetime) -> bool:
        """Move a timer from pending to firing.

        The claim is refused while an earlier step of the same execution is
        still pending or firing, so steps of one execution fire in order.
        """
        stmt = (
            update(ScheduledStep)
            .where(
                ScheduledStep.id == id,
                ScheduledStep.status == ScheduledStepStatus.PENDING.value,
                ~_earlier_step_open(),
            )
            .values(status=ScheduledStepStatus.FIRING.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def finish(self, id: str, status: ScheduledStepStatus) -> bool:
        """Move a firing timer to its final status (fired or cancelled)."""
        return await self.compare_and_set(
            id,
            expected={"status": ScheduledStepStatus.FIRING.value},
            values={"status": ScheduledStepStatus(status).value},
        )

    async def requeue(self, id: str, claimed_at: datetime) -> bool:
        """Return a firing timer to pending if it still carries ``claimed_at``."""
        return await self.compare_and_set(
            id,
            expected={"status": ScheduledStepStatus.FIRING.value, "claimed_at": claimed_at},
            values={"status": ScheduledStepStatus.PENDING.value, "claimed_at": None},
        )

    async def cancel_pending(self, execution_id: str) -> int:
        """Cancel every timer of an execution that has not started firing."""
        stmt = (
            update(ScheduledStep)
            .where(
                ScheduledStep.execution_id == execution_id,
                ScheduledStep.status == ScheduledStepStatus.PENDING.value,
            )
            .values(status=ScheduledStepStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount or 0


def _earlier_step_open():
    """EXISTS an earlier timer of the same execution still pending or firing."""
    earlier = aliased(ScheduledStep)
    return (
        select(earlier.id)
        .where(
            earlier.execution_id == ScheduledStep.execution_id,
            earlier.ordinal < ScheduledStep.ordinal,
            earlier.status.in_(
                [ScheduledStepStatus.PENDING.value, ScheduledStepStatus.FIRING.value]
            ),
        )
        .correlate(ScheduledStep.__table__)
        .exists()
    )
