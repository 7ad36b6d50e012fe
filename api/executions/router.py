from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, HTTPException, status

from api.delays.engine import DelayTaskEngine
from api.executions import models as api_models
from api.executions import services
from flow_engine.errors import (
    AmbiguousEdgeError,
    ConditionUnresolvedError,
    EvaluationError,
    FlowDefinitionError,
    FlowEngineError,
    FlowInactiveError,
    InvalidResponseError,
    InvalidTransitionError,
    MissingEdgeError,
    StaleExecutionError,
)
from shared.config import config

router = APIRouter(prefix="/v1", tags=["executions"])

PROBLEM_BASE = "https://clinic-flows.errors/executions"

# Most specific first; ExecutionParkedError is covered by InvalidTransitionError.
_PROBLEM_STATUS = (
    (services.RecordNotFoundError, status.HTTP_404_NOT_FOUND, "not-found", "Record not found"),
    (StaleExecutionError, status.HTTP_409_CONFLICT, "stale", "Execution changed"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "transition", "Transition not allowed"),
    (FlowInactiveError, status.HTTP_409_CONFLICT, "inactive", "Flow is not active"),
    (EvaluationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "evaluation", "Formula could not be evaluated"),
    (InvalidResponseError, status.HTTP_422_UNPROCESSABLE_ENTITY, "response", "Invalid step response"),
    (ConditionUnresolvedError, status.HTTP_422_UNPROCESSABLE_ENTITY, "conditions", "No condition matched"),
    (MissingEdgeError, status.HTTP_422_UNPROCESSABLE_ENTITY, "definition", "Invalid flow definition"),
    (AmbiguousEdgeError, status.HTTP_422_UNPROCESSABLE_ENTITY, "definition", "Invalid flow definition"),
    (FlowDefinitionError, status.HTTP_422_UNPROCESSABLE_ENTITY, "definition", "Invalid flow definition"),
)


def _raise_problem(exc: FlowEngineError) -> NoReturn:
    code, slug, title = status.HTTP_400_BAD_REQUEST, "engine", "Flow engine error"
    for error_type, error_status, error_slug, error_title in _PROBLEM_STATUS:
        if isinstance(exc, error_type):
            code, slug, title = error_status, error_slug, error_title
            break
    payload = api_models.ProblemDetails(
        type=f"{PROBLEM_BASE}/{slug}",
        title=title,
        status=code,
        detail=str(exc),
    )
    raise HTTPException(status_code=code, detail=payload.model_dump()) from exc


def _step_result(transition) -> api_models.StepResultResponse:
    match = transition.match
    return api_models.StepResultResponse(
        execution=api_models.ExecutionResponse.from_state(transition.execution),
        completed_node=transition.completed_node,
        match=api_models.ConditionMatchResponse(**vars(match)) if match else None,
        delay_scheduled_at=transition.delay_task.trigger_at if transition.delay_task else None,
    )


@router.post("/executions", response_model=api_models.StepResultResponse, status_code=status.HTTP_201_CREATED)
async def start_execution(payload: api_models.ExecutionStartRequest):
    try:
        transition = await services.start_execution(payload.flow_id, payload.patient_id)
    except FlowEngineError as exc:
        _raise_problem(exc)
    return _step_result(transition)


@router.get("/executions/{execution_id}", response_model=api_models.ExecutionResponse)
async def get_execution(execution_id: str):
    try:
        state = await services.get_execution(execution_id)
    except FlowEngineError as exc:
        _raise_problem(exc)
    return api_models.ExecutionResponse.from_state(state)


@router.post("/executions/{execution_id}/steps", response_model=api_models.StepResultResponse)
async def complete_step(execution_id: str, payload: api_models.StepCompleteRequest):
    try:
        transition = await services.complete_step(
            execution_id,
            payload.response,
            expected_node=payload.expected_node,
        )
    except FlowEngineError as exc:
        _raise_problem(exc)
    return _step_result(transition)


@router.post("/executions/{execution_id}/cancel", response_model=api_models.ExecutionResponse)
async def cancel_execution(execution_id: str):
    try:
        state = await services.cancel_execution(execution_id)
    except FlowEngineError as exc:
        _raise_problem(exc)
    return api_models.ExecutionResponse.from_state(state)


@router.post("/delay-tasks/process", response_model=api_models.DelayProcessResponse)
async def process_delay_tasks():
    """Run one delay scheduler pass now (ops hook; the worker polls on its own)."""
    result = await DelayTaskEngine(max_batch_size=config.delay_poller_max_batch_size).tick()
    return api_models.DelayProcessResponse(
        claimed=result.claimed,
        advanced=result.advanced,
        failed=result.failed,
        task_ids=result.task_ids,
    )
