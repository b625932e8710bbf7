"""Constants and enums for the workflow engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value, ExecutionStatus.CANCELLED.value}
)
ACTIVE_STATUSES = frozenset({ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value})


class LogStatus(str, Enum):
    """Status of an execution log entry.

    ``cancelled`` supersedes an earlier ``scheduled`` entry for a step that
    will never fire, and marks the final entry written by a cancel.
    """

    COMPLETED = "completed"
    FAILED = "failed"
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class StepKind(str, Enum):
    """Executable step types."""

    TASK = "task"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    ESCALATION = "escalation"


class NodeKind(str, Enum):
    """Workflow graph node vocabulary."""

    START = "start"
    TASK = "task"
    DECISION = "decision"
    PARALLEL = "parallel"
    MERGE = "merge"
    DELAY = "delay"
    TRIGGER = "trigger"
    END = "end"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DATA_TRANSFORM = "data_transform"
    VALIDATION = "validation"
    INTEGRATION = "integration"
    ML_PREDICTION = "ml_prediction"


# Structural only: no execution semantics.
BRANCHING_NODE_KINDS = frozenset({NodeKind.DECISION, NodeKind.PARALLEL, NodeKind.MERGE})


class WorkItemStatus(str, Enum):
    """Status of a Task or ApprovalRequest."""

    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ScheduledStepStatus(str, Enum):
    """Lifecycle of a durable step timer."""

    PENDING = "pending"
    FIRING = "firing"
    FIRED = "fired"
    CANCELLED = "cancelled"


class Severity(str, Enum):
    """Escalation severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.LOW.value: 0,
    Severity.MEDIUM.value: 1,
    Severity.HIGH.value: 2,
    Severity.CRITICAL.value: 3,
}


class Urgency(str, Enum):
    """Notification urgency."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TriggerCondition(str, Enum):
    """What an escalation rule reacts to."""

    TASK_OVERDUE = "task_overdue"
    APPROVAL_OVERDUE = "approval_overdue"
    EXECUTION_OVERDUE = "execution_overdue"


class EntityType(str, Enum):
    """Entities watched by the SLA tracker."""

    TASK = "task"
    APPROVAL = "approval"
    EXECUTION = "execution"


class EscalationOutcome(str, Enum):
    """Result of a single escalation attempt."""

    DELIVERED = "delivered"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
