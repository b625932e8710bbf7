"""SLA / escalation tracker.

Runs on a periodic tick over open tasks, open approval requests and
running executions. For each entity past its deadline it finds the
governing escalation rule and walks the rule's escalation path one level
at a time:

    level L -> L + 1 once  now > due + sum(time_thresholds[:L])

so level 1 fires on the first breach and each later level waits for the
hours granted to the previous path entry. The level is claimed with a
compare-and-set on the entity's ``escalation_level`` and committed before
anything is sent, so a level is escalated at most once even when ticks
overlap. Escalating past the last path entry is recorded as an
``exhausted`` event and never retried.

Each tick pages through every open overdue entity, so rows that match no
rule or have run out of path never hide newer breaches.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import EntityType, EscalationOutcome, TriggerCondition
from core.exceptions import EscalationExhaustedError, HandlerError, TransportError
from core.utils import add_hours, total_hours, utc_now
from notifications.directory import RoleDirectory
from services.base import TrackedRepository
from services.escalation_service import EscalationEventRepository, EscalationRuleRepository
from services.execution_service import ExecutionRepository
from services.work_item_service import ApprovalRepository, TaskRepository
from workflow.handlers import HandlerDependencies, StepHandlerRegistry

logger = structlog.get_logger(__name__)


def next_escalation_at(due: datetime, thresholds: Sequence[Any], level: int) -> datetime:
    """Deadline after which ``level`` may advance to ``level + 1``."""
    return add_hours(due, total_hours(float(t) for t in list(thresholds or [])[:level]))


@dataclass
class TickReport:
    """Counters for one tracker pass."""
    checked: int = 0
    escalated: int = 0
    exhausted: int = 0
    failed: int = 0
    skipped: int = 0
    events: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "escalated": self.escalated,
            "exhausted": self.exhausted,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class SLATracker:
    """Detect breaches and drive escalations for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Any,
        directory: RoleDirectory,
        clock: Callable[[], datetime] = utc_now,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.batch_size = batch_size or get_settings().SLA_BATCH_SIZE
        self.rules = EscalationRuleRepository(db)
        self.events = EscalationEventRepository(db)
        self.escalations = StepHandlerRegistry(
            HandlerDependencies.from_settings(db, notifier, directory, clock)
        ).escalation
        self._watched: list[tuple[EntityType, TriggerCondition, TrackedRepository]] = [
            (EntityType.TASK, TriggerCondition.TASK_OVERDUE, TaskRepository(db)),
            (EntityType.APPROVAL, TriggerCondition.APPROVAL_OVERDUE, ApprovalRepository(db)),
            (EntityType.EXECUTION, TriggerCondition.EXECUTION_OVERDUE, ExecutionRepository(db)),
        ]

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock()
        report = TickReport()
        for entity_type, trigger, repo in self._watched:
            cursor = None
            while True:
                page = await repo.find_open_overdue(now, self.batch_size, after=cursor)
                for entity in page:
                    cursor = (getattr(entity, repo.due_column), entity.id)
                    report.checked += 1
                    await self._evaluate(entity_type, trigger, repo, entity, now, report)
                if len(page) < self.batch_size:
                    break
        if report.checked:
            logger.info("SLA tick", **report.to_dict())
        return report

    async def _evaluate(
        self,
        entity_type: EntityType,
        trigger: TriggerCondition,
        repo: TrackedRepository,
        entity: Any,
        now: datetime,
        report: TickReport,
    ) -> None:
        entity_id = entity.id
        organization_id = entity.organization_id
        level = entity.escalation_level or 0
        due = getattr(entity, repo.due_column)
        severity = (entity.context or {}).get("severity")
        log = logger.bind(entity_type=entity_type.value, entity_id=entity_id, level=level)

        rule = await self.rules.find_matching(organization_id, trigger.value, severity)
        if rule is None:
            report.skipped += 1
            return

        path = list(rule.escalation_path or [])
        if level > len(path):
            # Exhaustion was already reported.
            report.skipped += 1
            return
        if not now > next_escalation_at(due, rule.time_thresholds, level):
            report.skipped += 1
            return

        rule_id = rule.id
        claimed = await repo.advance_escalation_level(entity_id, level, now)
        await self.db.commit()
        if not claimed:
            log.info("Escalation level already claimed")
            report.skipped += 1
            return

        target_role = path[level] if level < len(path) else None
        try:
            output = await self.escalations.escalate(
                path,
                level,
                organization_id,
                subject=_entity_label(entity_type, entity),
                data={
                    "entity_type": entity_type.value,
                    "entity_id": entity_id,
                    "due_date": due,
                    "rule": rule.name,
                },
            )
        except EscalationExhaustedError as e:
            outcome, detail = EscalationOutcome.EXHAUSTED, e.message
            report.exhausted += 1
            log.warning("Escalation path exhausted", rule_id=rule_id, path_length=len(path))
        except (TransportError, HandlerError) as e:
            outcome, detail = EscalationOutcome.FAILED, e.message
            report.failed += 1
            log.error("Escalation dispatch failed", target_role=target_role, error=e.message)
        else:
            outcome, detail = EscalationOutcome.DELIVERED, output.get("message")
            report.escalated += 1
            log.info("Entity escalated", target_role=target_role, new_level=level + 1)

        await self.events.record(
            organization_id=organization_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            level=level + 1,
            outcome=outcome.value,
            occurred_at=now,
            rule_id=rule_id,
            target_role=target_role,
            detail=detail,
        )
        await self.db.commit()
        report.events.append(
            {
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "level": level + 1,
                "outcome": outcome.value,
                "target_role": target_role,
            }
        )


def _entity_label(entity_type: EntityType, entity: Any) -> str:
    if entity_type == EntityType.TASK:
        return f"Overdue task: {entity.name}"
    if entity_type == EntityType.APPROVAL:
        return f"Overdue approval: {entity.title}"
    return f"Overdue workflow: {entity.workflow_id}"
