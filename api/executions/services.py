from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from tortoise.backends.base.client import BaseDBAsyncClient
from tortoise.transactions import in_transaction

from api.notifications.sender import dispatch_notifications
from flow_engine.errors import FlowEngineError, StaleExecutionError
from flow_engine.runtime import transitions
from flow_engine.runtime.state import ExecutionState, Transition
from flow_engine.schema.models import FlowDefinition
from shared.config import config
from shared.database.flow_models import DelayTask, FlowExecution, FlowRecord
from shared.logger import get_logger

logger = get_logger(__name__)


class RecordNotFoundError(FlowEngineError):
    """Raised when a flow or execution id does not exist."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def load_flow(flow_id: str, *, using_db: Optional[BaseDBAsyncClient] = None) -> FlowDefinition:
    query = FlowRecord.filter(id=flow_id)
    if using_db is not None:
        query = query.using_db(using_db)
    record = await query.first()
    if record is None:
        raise RecordNotFoundError(f"Flow '{flow_id}' not found")
    return record.to_definition()


async def _load_state(execution_id: str, *, using_db: Optional[BaseDBAsyncClient] = None) -> ExecutionState:
    query = FlowExecution.filter(id=execution_id)
    if using_db is not None:
        query = query.using_db(using_db)
    record = await query.first()
    if record is None:
        raise RecordNotFoundError(f"Execution '{execution_id}' not found")
    return record.to_state()


async def save_transition(
    transition: Transition,
    expected_version: int,
    *,
    using_db: BaseDBAsyncClient,
) -> ExecutionState:
    """
    Write the transition's state if nobody else moved the execution since it
    was read, and persist its delay task. Returns the state with its new version.

    Raises:
        StaleExecutionError: the row's version no longer matches ``expected_version``.
    """

    state = transition.execution
    next_version = expected_version + 1
    updated = await FlowExecution.filter(id=state.id, version=expected_version).using_db(using_db).update(
        version=next_version,
        **FlowExecution.state_fields(state),
    )
    if not updated:
        raise StaleExecutionError(
            f"Execution '{state.id}' changed since version {expected_version}; reload and retry"
        )

    if transition.delay_task is not None:
        await DelayTask.create(using_db=using_db, **DelayTask.fields_from_spec(transition.delay_task))

    saved = state.model_copy(update={"version": next_version})
    transition.execution = saved
    return saved


async def start_execution(
    flow_id: str,
    patient_id: str,
    *,
    now: Optional[datetime] = None,
) -> Transition:
    flow = await load_flow(flow_id)
    transition = transitions.start_execution(flow, patient_id, now=now or _now())
    state = transition.execution

    async with in_transaction() as conn:
        await FlowExecution.create(
            using_db=conn,
            id=state.id,
            flow_id=flow.id,
            patient_id=state.patient_id,
            version=state.version,
            **FlowExecution.state_fields(state),
        )
        if transition.delay_task is not None:
            await DelayTask.create(using_db=conn, **DelayTask.fields_from_spec(transition.delay_task))

    logger.info(
        "Execution started",
        extra={"execution_id": state.id, "flow_id": flow.id, "current_node": state.current_node},
    )
    await dispatch_notifications(transition.notifications)
    return transition


async def get_execution(execution_id: str) -> ExecutionState:
    return await _load_state(execution_id)


async def complete_step(
    execution_id: str,
    response: Any = None,
    *,
    expected_node: Optional[str] = None,
    now: Optional[datetime] = None,
    strict_conditions: Optional[bool] = None,
) -> Transition:
    state = await _load_state(execution_id)
    if expected_node is not None and expected_node != state.current_node:
        raise StaleExecutionError(
            f"Execution '{execution_id}' is at '{state.current_node}', not '{expected_node}'"
        )

    flow = await load_flow(state.flow_id)
    transition = transitions.complete_step(
        flow,
        state,
        response,
        now=now or _now(),
        strict_conditions=config.strict_conditions if strict_conditions is None else strict_conditions,
    )

    async with in_transaction() as conn:
        saved = await save_transition(transition, state.version, using_db=conn)

    logger.info(
        "Step completed",
        extra={
            "execution_id": saved.id,
            "completed_node": transition.completed_node,
            "current_node": saved.current_node,
            "status": saved.status.value,
        },
    )
    await dispatch_notifications(transition.notifications)
    return transition


async def advance_after_delay(
    execution_id: str,
    *,
    using_db: BaseDBAsyncClient,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Resume an execution whose delay elapsed. Notifications are left on the
    returned transition for the caller to send once its transaction commits.
    """

    state = await _load_state(execution_id, using_db=using_db)
    flow = await load_flow(state.flow_id, using_db=using_db)
    transition = transitions.advance_after_delay(flow, state, now=now or _now())
    if transition.changed:
        await save_transition(transition, state.version, using_db=using_db)
    return transition


async def cancel_execution(execution_id: str, *, now: Optional[datetime] = None) -> ExecutionState:
    state = await _load_state(execution_id)
    transition = transitions.cancel_execution(state)

    async with in_transaction() as conn:
        saved = await save_transition(transition, state.version, using_db=conn)
        await DelayTask.filter(execution_id=execution_id, processed=False).using_db(conn).update(
            processed=True,
            processed_at=now or _now(),
            error="cancelled",
        )

    logger.info("Execution cancelled", extra={"execution_id": execution_id})
    return saved


__all__ = [
    "RecordNotFoundError",
    "advance_after_delay",
    "cancel_execution",
    "complete_step",
    "get_execution",
    "load_flow",
    "save_transition",
    "start_execution",
]
