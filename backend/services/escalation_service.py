"""Escalation rule lookup and escalation event audit trail."""

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import SEVERITY_RANK, Severity
from db.models.escalation import EscalationEvent, EscalationRule
from services.base import BaseRepository


def severity_rank(value: Optional[str]) -> int:
    """Rank of a severity label; unknown labels rank as ``medium``."""
    return SEVERITY_RANK.get(str(value or "").lower(), SEVERITY_RANK[Severity.MEDIUM.value])


class EscalationRuleRepository(BaseRepository[EscalationRule]):
    def __init__(self, db: AsyncSession):
        super().__init__(EscalationRule, db)

    async def create(
        self,
        organization_id: str,
        name: str,
        trigger_condition: str,
        escalation_path: list[str],
        time_thresholds: Optional[list[float]] = None,
        severity: str = Severity.MEDIUM.value,
        is_active: bool = True,
    ) -> EscalationRule:
        return await self.insert(
            {
                "organization_id": organization_id,
                "name": name,
                "trigger_condition": trigger_condition,
                "severity": severity,
                "escalation_path": list(escalation_path),
                "time_thresholds": list(time_thresholds or []),
                "is_active": is_active,
            }
        )

    async def list_active(
        self,
        organization_id: str,
        trigger_condition: str,
    ) -> Sequence[EscalationRule]:
        """Active rules for one trigger, oldest first."""
        query = (
            select(EscalationRule)
            .where(
                EscalationRule.organization_id == organization_id,
                EscalationRule.trigger_condition == trigger_condition,
                EscalationRule.is_active == True,  # noqa: E712
            )
            .order_by(EscalationRule.created_at.asc(), EscalationRule.id.asc())
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def find_matching(
        self,
        organization_id: str,
        trigger_condition: str,
        entity_severity: Optional[str],
    ) -> Optional[EscalationRule]:
        """Pick the rule that governs an entity.

        A rule applies when the entity's severity ranks at or above the
        rule's severity. Among applicable rules the most severe wins; ties
        go to the oldest rule.
        """
        rank = severity_rank(entity_severity)
        best: Optional[EscalationRule] = None
        for rule in await self.list_active(organization_id, trigger_condition):
            rule_rank = severity_rank(rule.severity)
            if rule_rank > rank:
                continue
            if best is None or rule_rank > severity_rank(best.severity):
                best = rule
        return best


class EscalationEventRepository(BaseRepository[EscalationEvent]):
    def __init__(self, db: AsyncSession):
        super().__init__(EscalationEvent, db)

    async def record(
        self,
        organization_id: str,
        entity_type: str,
        entity_id: str,
        level: int,
        outcome: str,
        occurred_at: datetime,
        rule_id: Optional[str] = None,
        target_role: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> EscalationEvent:
        return await self.insert(
            {
                "organization_id": organization_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "rule_id": rule_id,
                "level": level,
                "target_role": target_role,
                "outcome": outcome,
                "detail": detail,
                "occurred_at": occurred_at,
            }
        )

    async def list_for_entity(self, entity_id: str) -> Sequence[EscalationEvent]:
        query = (
            select(EscalationEvent)
            .where(EscalationEvent.entity_id == entity_id)
            .order_by(EscalationEvent.occurred_at.asc(), EscalationEvent.level.asc())
        )
        result = await self.db.execute(query)
        return result.scalars().all()
