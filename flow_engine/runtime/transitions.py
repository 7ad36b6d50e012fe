"""
Per-patient execution state machine.

``pending -> in-progress -> completed``, with ``cancelled`` reachable from both
active states. While ``next_step_available_at`` is set the execution is parked
on a delay node; only ``advance_after_delay`` (driven by the delay scheduler)
moves it on.

All functions here are pure: they read a ``FlowDefinition`` and an
``ExecutionState`` and return a ``Transition``. Nothing is written until the
caller persists the returned state, so an evaluation error can never leave a
half-applied step behind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from flow_engine.conditions.evaluator import evaluate_conditions, to_number
from flow_engine.errors import (
    ConditionUnresolvedError,
    ExecutionParkedError,
    FlowDefinitionError,
    FlowInactiveError,
    InvalidResponseError,
    InvalidTransitionError,
    MissingEdgeError,
)
from flow_engine.expr.formula import evaluate_formula
from flow_engine.runtime.state import (
    DelayTaskSpec,
    ExecutionState,
    ExecutionStatus,
    NotificationRequest,
    StepSnapshot,
    Transition,
)
from flow_engine.schema.models import (
    AnswerType,
    CalculatorNode,
    ConditionsNode,
    DelayNode,
    Edge,
    EndNode,
    FlowDefinition,
    FormEndNode,
    FormStartNode,
    Node,
    NumberNode,
    NumberType,
    QuestionNode,
    SpecialConditionsNode,
    StartNode,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot(node: Node, available_at: Optional[datetime] = None) -> StepSnapshot:
    return StepSnapshot(
        node_id=node.id,
        type=node.type,
        title=node.display_title(),
        available_at=available_at,
    )


def _refresh_progress(state: ExecutionState) -> None:
    if state.total_steps <= 0:
        state.progress = 100
        return
    state.completed_steps = min(state.completed_steps, state.total_steps)
    state.progress = min(100, round(state.completed_steps / state.total_steps * 100))


def _mark_completed(state: ExecutionState, now: datetime) -> None:
    state.status = ExecutionStatus.completed
    state.completed_steps = state.total_steps
    state.progress = 100
    state.next_step_available_at = None
    state.completed_at = now


def _form_notification(node: Node, state: ExecutionState) -> NotificationRequest:
    return NotificationRequest(
        event=node.type,
        node_id=node.id,
        patient_id=state.patient_id,
        execution_id=state.id,
        form_name=node.data.form_name or node.data.title,
    )


def _enter(
    flow: FlowDefinition,
    state: ExecutionState,
    edge: Optional[Edge],
    transition: Transition,
    *,
    now: datetime,
    count_step: bool,
) -> None:
    """Follow ``edge`` from the node just completed, updating the working copy."""

    if edge is None:
        _mark_completed(state, now)
        return

    target = flow.node(edge.target)
    if target is None:
        raise MissingEdgeError(f"Edge from '{edge.source}' targets unknown node '{edge.target}'")

    if count_step:
        state.completed_steps += 1
    state.status = ExecutionStatus.in_progress

    if isinstance(target, DelayNode):
        available_at = now + target.data.duration()
        after = flow.outgoing_edge(target.id)
        after_node = flow.node(after.target) if after is not None else None
        if after is not None and after_node is None:
            raise MissingEdgeError(f"Edge from '{target.id}' targets unknown node '{after.target}'")

        # Parked: current_node stays on the step just completed.
        state.next_step_available_at = available_at
        state.current_step = _snapshot(target, available_at)
        _refresh_progress(state)
        transition.delay_task = DelayTaskSpec(
            execution_id=state.id,
            patient_id=state.patient_id,
            trigger_at=available_at,
            delay_node_id=target.id,
            next_node_id=after_node.id if after_node is not None else None,
            next_node_type=after_node.type if after_node is not None else None,
            form_name=(
                after_node.data.form_name or after_node.data.title
                if isinstance(after_node, (FormStartNode, FormEndNode))
                else None
            ),
        )
        return

    state.current_node = target.id
    state.current_step = _snapshot(target)
    state.next_step_available_at = None
    _refresh_progress(state)

    if isinstance(target, EndNode):
        _mark_completed(state, now)
    elif isinstance(target, (FormStartNode, FormEndNode)):
        transition.notifications.append(_form_notification(target, state))


def _response_value(response: Any, key: str = "value") -> Any:
    if isinstance(response, dict):
        return response.get(key)
    return response


def _record_number(node: NumberNode, state: ExecutionState, response: Any) -> None:
    raw = _response_value(response)
    number = to_number(raw)
    if number is None:
        raise InvalidResponseError(f"Step '{node.id}' expects a number for '{node.data.name}', got {raw!r}")
    if node.data.number_type == NumberType.integer and not number.is_integer():
        raise InvalidResponseError(f"Step '{node.id}' expects a whole number for '{node.data.name}'")
    state.calculator_results[node.data.name] = number


def _record_calculation(node: CalculatorNode, state: ExecutionState, response: Any) -> None:
    for calculator_field in node.data.input_fields:
        raw = _response_value(response, calculator_field.name)
        number = to_number(raw)
        if number is None:
            raise InvalidResponseError(
                f"Step '{node.id}' expects a number for '{calculator_field.name}', got {raw!r}"
            )
        state.calculator_results[calculator_field.name] = number

    result = evaluate_formula(
        node.data.operation,
        state.calculator_results,
        node.data.referenced_fields or None,
    )
    state.calculator_results[node.result_key] = result
    state.last_calculator_result = result


def _fallback_edge(flow: FlowDefinition, node_id: str) -> Optional[Edge]:
    edge = flow.default_edge(node_id)
    if edge is None:
        edges = flow.outgoing_edges(node_id)
        if len(edges) == 1:
            return edges[0]
    return edge


def _record_answer(flow: FlowDefinition, node: QuestionNode, state: ExecutionState, response: Any) -> Optional[Edge]:
    answer = _response_value(response)
    if answer is None or answer == "" or answer == []:
        raise InvalidResponseError(f"Step '{node.id}' requires an answer")

    options = node.data.options
    if node.data.answer_type == AnswerType.multiple:
        answers = answer if isinstance(answer, list) else [answer]
        if options and any(item not in options for item in answers):
            raise InvalidResponseError(f"Step '{node.id}' received an option it does not offer")
        state.question_responses[node.response_key] = answers
        return _fallback_edge(flow, node.id)

    if isinstance(answer, list):
        raise InvalidResponseError(f"Step '{node.id}' accepts a single answer")
    if options and answer not in options:
        raise InvalidResponseError(f"Step '{node.id}' received an option it does not offer")
    state.question_responses[node.response_key] = answer

    if answer in options:
        option_edge = flow.outgoing_edge(node.id, f"opcao-{options.index(answer)}")
        if option_edge is not None:
            return option_edge
    return _fallback_edge(flow, node.id)


def _route_branch(
    flow: FlowDefinition,
    node: ConditionsNode | SpecialConditionsNode,
    state: ExecutionState,
    transition: Transition,
    *,
    strict: bool,
) -> Optional[Edge]:
    match = evaluate_conditions(node, state.bindings())
    transition.match = match

    if match is not None:
        state.question_responses[node.id] = match.label or match.id or match.handle
        edge = flow.outgoing_edge(node.id, match.handle)
        if edge is None and isinstance(node, SpecialConditionsNode):
            edge = flow.default_edge(node.id)
        if edge is None:
            logger.warning(
                "Matched condition has no outgoing edge",
                extra={"node_id": node.id, "handle": match.handle, "execution_id": state.id},
            )
        return edge

    edge = flow.default_edge(node.id)
    if edge is None:
        if strict:
            raise ConditionUnresolvedError(f"No condition matched on node '{node.id}'")
        logger.warning(
            "No condition matched and no default edge, completing execution",
            extra={"node_id": node.id, "execution_id": state.id},
        )
    return edge


def _record_and_route(
    flow: FlowDefinition,
    node: Node,
    state: ExecutionState,
    response: Any,
    transition: Transition,
    *,
    strict: bool,
) -> Optional[Edge]:
    if isinstance(node, NumberNode):
        _record_number(node, state, response)
        return flow.outgoing_edge(node.id)
    if isinstance(node, CalculatorNode):
        _record_calculation(node, state, response)
        return flow.outgoing_edge(node.id)
    if isinstance(node, QuestionNode):
        return _record_answer(flow, node, state, response)
    if isinstance(node, (ConditionsNode, SpecialConditionsNode)):
        return _route_branch(flow, node, state, transition, strict=strict)
    if isinstance(node, (StartNode, DelayNode, FormStartNode, FormEndNode)):
        return flow.outgoing_edge(node.id)
    if isinstance(node, EndNode):
        return None
    raise FlowDefinitionError(f"Unsupported node type '{node.type}'")


def _ensure_active(execution: ExecutionState) -> None:
    if not execution.is_active:
        raise InvalidTransitionError(
            f"Execution '{execution.id}' is {execution.status.value} and cannot be advanced"
        )


# -----------------------------
# Public operations
# -----------------------------
def start_execution(
    flow: FlowDefinition,
    patient_id: str,
    *,
    execution_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """Create an execution positioned on the node after ``start``."""

    if not flow.is_active:
        raise FlowInactiveError(f"Flow '{flow.id}' is not active")

    now = _aware(now) if now else _utcnow()
    start = flow.start_node()
    state = ExecutionState(
        id=execution_id or uuid4().hex,
        flow_id=flow.id,
        patient_id=patient_id,
        status=ExecutionStatus.in_progress,
        current_node=start.id,
        current_step=_snapshot(start),
        total_steps=flow.step_count(),
        started_at=now,
    )
    transition = Transition(execution=state)
    _enter(flow, state, flow.outgoing_edge(start.id), transition, now=now, count_step=False)
    return transition


def complete_step(
    flow: FlowDefinition,
    execution: ExecutionState,
    response: Any = None,
    *,
    now: Optional[datetime] = None,
    strict_conditions: bool = False,
) -> Transition:
    """
    Record the patient's response for the current node and move on.

    Raises:
        InvalidTransitionError: the execution is completed or cancelled.
        ExecutionParkedError: the execution waits on a delay.
        EvaluationError / InvalidResponseError: the step could not be resolved;
            ``execution`` is left untouched and the call can be retried.
    """

    _ensure_active(execution)
    if execution.is_parked:
        raise ExecutionParkedError(
            f"Execution '{execution.id}' is waiting until {execution.next_step_available_at.isoformat()}"
        )

    node = flow.node(execution.current_node)
    if node is None:
        raise FlowDefinitionError(f"Current node '{execution.current_node}' is not part of flow '{flow.id}'")

    now = _aware(now) if now else _utcnow()
    state = execution.model_copy(deep=True)
    transition = Transition(execution=state, completed_node=node.id)

    edge = _record_and_route(flow, node, state, response, transition, strict=strict_conditions)
    _enter(flow, state, edge, transition, now=now, count_step=True)
    return transition


def advance_after_delay(
    flow: FlowDefinition,
    execution: ExecutionState,
    *,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Move a parked execution past its delay node.

    Calling this on an execution that is not parked, is no longer active, or
    whose delay has not elapsed yet is a no-op (``changed=False``), so repeated
    invocations advance at most once.
    """

    now = _aware(now) if now else _utcnow()
    if not execution.is_active or not execution.is_parked:
        return Transition(execution=execution, changed=False)
    if _aware(execution.next_step_available_at) > now:
        return Transition(execution=execution, changed=False)

    delay_id = execution.current_step.node_id if execution.current_step else None
    delay_node = flow.node(delay_id)
    if not isinstance(delay_node, DelayNode):
        raise FlowDefinitionError(f"Execution '{execution.id}' is parked on '{delay_id}', which is not a delay node")

    state = execution.model_copy(deep=True)
    state.next_step_available_at = None
    transition = Transition(execution=state, completed_node=delay_node.id)
    _enter(flow, state, flow.outgoing_edge(delay_node.id), transition, now=now, count_step=True)
    return transition


def cancel_execution(execution: ExecutionState) -> Transition:
    _ensure_active(execution)
    state = execution.model_copy(deep=True)
    state.status = ExecutionStatus.cancelled
    state.next_step_available_at = None
    return Transition(execution=state)


__all__ = [
    "advance_after_delay",
    "cancel_execution",
    "complete_step",
    "start_execution",
]
