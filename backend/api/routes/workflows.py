"""Workflow execution endpoints: execute, status, cancel, replay, plans, definition validation."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, status
import logging

from api.schemas.workflow import (
    DefinitionValidationResponse,
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
    ExecutionDetailResponse,
    ExecutionLogEntryResponse,
    ExecutionResponse,
    PlanResponse,
    StepSpecResponse,
)
from app.dependencies import get_current_org, get_execution_engine
from core.exceptions import ValidationError
from workflow.engine import ExecutionEngine
from workflow.graph import WorkflowDefinition, validate
from workflow.plans import get_plan_registry, plan_from_definition

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


def _execution_to_response(ex) -> ExecutionResponse:
    """Convert an Execution ORM object to response schema."""
    return ExecutionResponse.model_validate(ex)


@router.post("/execute", response_model=ExecuteWorkflowResponse, status_code=status.HTTP_201_CREATED)
async def execute_workflow(
    request: ExecuteWorkflowRequest,
    org_id: str = Depends(get_current_org),
    engine: ExecutionEngine = Depends(get_execution_engine),
) -> ExecuteWorkflowResponse:
    """
    Start a workflow: runs the first step now and schedules the rest.
    """
    execution = await engine.submit(request.workflow_id, request.context, org_id)
    logger.info(f"Workflow {request.workflow_id} submitted -> execution {execution.id} ({execution.status})")
    return ExecuteWorkflowResponse(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        status=execution.status,
        steps_count=execution.steps_count,
    )


@router.get("/executions/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    org_id: str = Depends(get_current_org),
    engine: ExecutionEngine = Depends(get_execution_engine),
) -> ExecutionDetailResponse:
    """
    Get an execution and its log entries in chronological order.
    """
    execution, logs = await engine.get_execution(execution_id, org_id)
    return ExecutionDetailResponse(
        execution=_execution_to_response(execution),
        logs=[ExecutionLogEntryResponse.model_validate(entry) for entry in logs],
    )


@router.post("/executions/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    org_id: str = Depends(get_current_org),
    engine: ExecutionEngine = Depends(get_execution_engine),
) -> ExecutionResponse:
    """
    Cancel a pending or running execution.

    If a step is in flight the response shows ``cancel_requested`` and the
    execution moves to cancelled once that step has been logged.
    """
    execution = await engine.cancel(execution_id, org_id)
    return _execution_to_response(execution)


@router.post(
    "/executions/{execution_id}/replay",
    response_model=ExecuteWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
)
async def replay_execution(
    execution_id: str,
    org_id: str = Depends(get_current_org),
    engine: ExecutionEngine = Depends(get_execution_engine),
) -> ExecuteWorkflowResponse:
    """
    Operator-initiated replay of a failed or cancelled execution.
    """
    execution = await engine.replay(execution_id, org_id)
    return ExecuteWorkflowResponse(
        execution_id=execution.id,
        workflow_id=execution.workflow_id,
        status=execution.status,
        steps_count=execution.steps_count,
    )


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(org_id: str = Depends(get_current_org)) -> List[PlanResponse]:
    """
    List registered workflow categories and their steps.
    """
    return [
        PlanResponse(category=category, steps=[StepSpecResponse(**s) for s in steps])
        for category, steps in get_plan_registry().describe().items()
    ]


@router.post("/definitions/validate", response_model=DefinitionValidationResponse)
async def validate_definition(
    definition: Dict[str, Any],
    org_id: str = Depends(get_current_org),
) -> DefinitionValidationResponse:
    """
    Validate an editor graph; 400 with every broken rule if it is invalid.
    """
    graph = WorkflowDefinition.from_dict(definition)
    validate(graph)

    try:
        steps = plan_from_definition(graph)
    except ValidationError as e:
        return DefinitionValidationResponse(valid=True, executable=False, reason=e.message)

    return DefinitionValidationResponse(
        valid=True,
        executable=True,
        steps=[StepSpecResponse(**s.to_dict()) for s in steps],
    )
