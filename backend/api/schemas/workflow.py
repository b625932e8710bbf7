"""Workflow execution schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional, Dict, Any


class ExecuteWorkflowRequest(BaseModel):
    """Request to start a workflow execution."""

    workflow_id: str = Field(min_length=1, description="Workflow category or identifier")
    context: Dict[str, Any] = Field(default={}, description="Payload threaded through every step")


class ExecuteWorkflowResponse(BaseModel):
    """Result of submitting a workflow."""

    execution_id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow identifier as submitted")
    status: str = Field(description="Execution status after the first step")
    steps_count: int = Field(description="Number of resolved steps")


class ExecutionResponse(BaseModel):
    """Execution information response."""

    id: str = Field(description="Execution ID")
    workflow_id: str = Field(description="Workflow identifier")
    organization_id: str = Field(description="Owning organization")
    status: str = Field(description="pending, running, completed, failed or cancelled")
    current_step_id: Optional[str] = Field(default=None, description="Last step reached")
    steps_count: int = Field(description="Number of resolved steps")
    context: Dict[str, Any] = Field(default={}, description="Execution context")
    cancel_requested: bool = Field(default=False, description="Cancel pending on an in-flight step")
    escalation_level: int = Field(default=0, description="Escalation levels already notified")
    started_at: Optional[datetime] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Execution completion timestamp")
    due_at: Optional[datetime] = Field(default=None, description="SLA deadline of the whole execution")
    error_message: Optional[str] = Field(default=None, description="Failure detail")
    replay_of: Optional[str] = Field(default=None, description="Execution this one replays")

    class Config:
        from_attributes = True


class ExecutionLogEntryResponse(BaseModel):
    """Execution log entry response."""

    id: int = Field(description="Append sequence number")
    step_id: Optional[str] = Field(default=None, description="Step the entry refers to")
    step_name: str = Field(description="Step name")
    status: str = Field(description="completed, failed, scheduled or cancelled")
    input: Optional[Dict[str, Any]] = Field(default=None, description="Step input")
    output: Optional[Dict[str, Any]] = Field(default=None, description="Step output")
    error_detail: Optional[str] = Field(default=None, description="Failure detail")
    started_at: datetime = Field(description="Start (or scheduling) timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp")

    class Config:
        from_attributes = True


class ExecutionDetailResponse(BaseModel):
    """Execution together with its chronological log."""

    execution: ExecutionResponse
    logs: List[ExecutionLogEntryResponse]


class StepSpecResponse(BaseModel):
    """One step of a plan."""

    step_id: str
    name: str
    kind: str
    assigned_role: Optional[str] = None
    due_hours: Optional[float] = None
    ordinal: int


class PlanResponse(BaseModel):
    """A registered workflow category and its steps."""

    category: str
    steps: List[StepSpecResponse]


class DefinitionValidationResponse(BaseModel):
    """Outcome of validating an editor graph."""

    valid: bool = Field(description="Graph passes structural validation")
    executable: bool = Field(description="Graph can be linearised into a step plan")
    steps: Optional[List[StepSpecResponse]] = Field(default=None, description="Linearised plan")
    reason: Optional[str] = Field(default=None, description="Why the graph is not executable")
