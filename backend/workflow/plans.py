"""Step plan registry: workflow category -> ordered StepSpec list.

Categories are looked up by exact key after normalisation
(``"Incident-Response"`` -> ``"incident_response"``). Unknown categories
fall back to the default plan unless the caller asks for strict lookup.
New categories are added with :meth:`StepPlanRegistry.register` or, from
an editor graph, :meth:`StepPlanRegistry.register_definition`.
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog

from core.constants import NodeKind, StepKind
from core.exceptions import ValidationError
from core.utils import normalize_identifier, total_hours
from workflow.graph import WorkflowDefinition, linear_path

logger = structlog.get_logger(__name__)

DEFAULT_PLAN_KEY = "default"

# Node kinds that map directly onto a step kind.
_NODE_STEP_KINDS = {
    NodeKind.TASK: StepKind.TASK,
    NodeKind.APPROVAL: StepKind.APPROVAL,
    NodeKind.NOTIFICATION: StepKind.NOTIFICATION,
}


@dataclass(frozen=True)
class StepSpec:
    """One resolved step of an execution plan."""
    step_id: str
    name: str
    kind: StepKind
    assigned_role: Optional[str] = None
    due_hours: Optional[float] = None
    ordinal: int = 1

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "kind": self.kind.value,
            "assigned_role": self.assigned_role,
            "due_hours": self.due_hours,
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepSpec":
        return cls(
            step_id=data["step_id"],
            name=data["name"],
            kind=StepKind(data["kind"]),
            assigned_role=data.get("assigned_role"),
            due_hours=data.get("due_hours"),
            ordinal=int(data.get("ordinal", 1)),
        )


def build_plan(steps: Sequence[tuple]) -> list[StepSpec]:
    """Build a plan from ``(name, kind, role, due_hours)`` tuples.

    Step ids are ``step_1``, ``step_2``... in order.
    """
    return [
        StepSpec(
            step_id=f"step_{i}",
            name=name,
            kind=StepKind(kind),
            assigned_role=role,
            due_hours=due_hours,
            ordinal=i,
        )
        for i, (name, kind, role, due_hours) in enumerate(steps, start=1)
    ]


def plan_due_hours(steps: Sequence[StepSpec]) -> float:
    """Total SLA of a plan (steps without due hours count as zero)."""
    return total_hours(s.due_hours for s in steps)


def fire_offsets(steps: Sequence[StepSpec]) -> list[float]:
    """Hours after submission at which each step fires.

    Step k fires once every earlier step's due hours have elapsed, so the
    first step fires at 0.
    """
    offsets: list[float] = []
    elapsed = 0.0
    for step in steps:
        offsets.append(elapsed)
        elapsed += step.due_hours or 0
    return offsets


def plan_from_definition(definition: WorkflowDefinition) -> list[StepSpec]:
    """Linearise an editor graph into a step plan.

    ``task``, ``approval`` and ``notification`` nodes become steps; any
    node whose configuration carries ``step_kind`` (e.g. a ``trigger``
    node with ``step_kind: escalation``) becomes a step of that kind.
    Other node kinds carry no runtime behaviour and are skipped.
    """
    steps: list[StepSpec] = []
    for node in linear_path(definition):
        config = node.configuration or {}
        override = config.get("step_kind")
        if override:
            try:
                kind = StepKind(str(override).lower())
            except ValueError:
                raise ValidationError(
                    f"Unknown step kind {override!r} on node {node.id}",
                    details={"node_id": node.id},
                )
        elif node.kind in _NODE_STEP_KINDS:
            kind = _NODE_STEP_KINDS[node.kind]
        else:
            continue

        due_hours = config.get("due_hours")
        steps.append(
            StepSpec(
                step_id=node.id,
                name=node.label or node.id,
                kind=kind,
                assigned_role=config.get("assigned_role"),
                due_hours=float(due_hours) if due_hours is not None else None,
                ordinal=len(steps) + 1,
            )
        )

    if not steps:
        raise ValidationError(
            "Definition contains no executable steps",
            details={"definition_id": definition.id},
        )
    return steps


# ─── Registry ─────────────────────────────────────────────────

class StepPlanRegistry:
    """Maps normalised workflow categories to step plans."""

    def __init__(self, include_builtin: bool = True):
        self._plans: dict[str, list[StepSpec]] = {}
        if include_builtin:
            for key, steps in BUILTIN_PLANS.items():
                self._plans[key] = build_plan(steps)

    def register(self, category: str, steps: Sequence[StepSpec]) -> None:
        key = normalize_identifier(category)
        if not key:
            raise ValidationError("Workflow category must not be empty")
        if not steps:
            raise ValidationError(f"Plan for {key!r} has no steps")
        ids = [s.step_id for s in steps]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"Plan for {key!r} has duplicate step ids")
        self._plans[key] = [
            StepSpec(
                step_id=s.step_id,
                name=s.name,
                kind=s.kind,
                assigned_role=s.assigned_role,
                due_hours=s.due_hours,
                ordinal=i,
            )
            for i, s in enumerate(steps, start=1)
        ]
        logger.info("step_plan_registered", category=key, steps=len(steps))

    def register_definition(self, category: str, definition: WorkflowDefinition) -> list[StepSpec]:
        steps = plan_from_definition(definition)
        self.register(category, steps)
        return self.get(category)

    def get(self, category: str) -> Optional[list[StepSpec]]:
        plan = self._plans.get(normalize_identifier(category))
        return list(plan) if plan is not None else None

    def has(self, category: str) -> bool:
        return normalize_identifier(category) in self._plans

    def categories(self) -> list[str]:
        return sorted(self._plans)

    def resolve(self, workflow_identifier: str, strict: bool = False) -> list[StepSpec]:
        """Ordered steps for a workflow identifier.

        Raises:
            ValidationError: empty identifier, or unknown category with
                ``strict=True``
        """
        if not workflow_identifier or not str(workflow_identifier).strip():
            raise ValidationError("workflow_id is required")

        key = normalize_identifier(str(workflow_identifier))
        plan = self._plans.get(key)
        if plan is not None:
            return list(plan)

        if strict:
            raise ValidationError(
                f"Unknown workflow category: {workflow_identifier}",
                details={"known": self.categories()},
            )

        logger.info("step_plan_fallback", workflow_id=workflow_identifier, category=DEFAULT_PLAN_KEY)
        return list(self._plans[DEFAULT_PLAN_KEY])

    def describe(self) -> dict[str, Any]:
        return {key: [s.to_dict() for s in steps] for key, steps in sorted(self._plans.items())}


BUILTIN_PLANS: dict[str, list[tuple]] = {
    "incident_response": [
        ("Immediate Assessment", "task", "analyst", 1),
        ("Management Notification", "notification", "manager", None),
        ("Manager Approval", "approval", "manager", 4),
        ("Executive Escalation", "escalation", "executive", 8),
    ],
    "policy_review": [
        ("Policy Review", "task", "compliance", 72),
        ("Stakeholder Review", "approval", "stakeholder", 120),
        ("Final Approval", "approval", "executive", 168),
    ],
    "kri_breach": [
        ("Breach Assessment", "task", "risk_officer", 2),
        ("Risk Committee Notification", "notification", "risk_committee", None),
        ("Mitigation Plan", "task", "risk_officer", 24),
        ("Board Notification", "escalation", "board", 48),
    ],
    DEFAULT_PLAN_KEY: [
        ("Initial Processing", "task", "analyst", 24),
        ("Review and Approval", "approval", "manager", 48),
    ],
}


# ─── Singleton ─────────────────────────────────────────────────

_registry: Optional[StepPlanRegistry] = None


def get_plan_registry() -> StepPlanRegistry:
    """Get or create the singleton StepPlanRegistry."""
    global _registry
    if _registry is None:
        _registry = StepPlanRegistry()
    return _registry
