from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flow_engine import parse_flow_definition
from flow_engine.errors import (
    ConditionUnresolvedError,
    EvaluationError,
    ExecutionParkedError,
    FlowInactiveError,
    InvalidResponseError,
    InvalidTransitionError,
    MissingEdgeError,
)
from flow_engine.runtime import (
    ExecutionStatus,
    advance_after_delay,
    cancel_execution,
    complete_step,
    start_execution,
)
from flow_engine.schema.models import FlowDefinition

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _linear(*nodes: dict, flow_id: str = "flow-1", **extra) -> FlowDefinition:
    edges = [{"source": a["id"], "target": b["id"]} for a, b in zip(nodes, nodes[1:])]
    return parse_flow_definition({"id": flow_id, "nodes": list(nodes), "edges": edges, **extra})


def _bmi_flow() -> FlowDefinition:
    return _linear(
        {"id": "start", "type": "start"},
        {"id": "peso", "type": "number", "data": {"nomenclatura": "peso"}},
        {"id": "altura", "type": "number", "data": {"nomenclatura": "altura"}},
        {
            "id": "imc",
            "type": "calculator",
            "data": {"operacao": "peso / (altura ^ 2)", "nomenclatura": "imc"},
        },
        {"id": "end", "type": "end"},
    )


def _conditions_flow() -> FlowDefinition:
    return parse_flow_definition(
        {
            "id": "flow-2",
            "nodes": [
                {"id": "start", "type": "start"},
                {
                    "id": "calc",
                    "type": "calculator",
                    "data": {
                        "operacao": "a * 1",
                        "nomenclatura": "score",
                        "calculatorFields": [{"nomenclatura": "a"}],
                    },
                },
                {
                    "id": "cond",
                    "type": "conditions",
                    "data": {
                        "conditions": [
                            {"operador": "maior", "valor": 25, "label": "Alto"},
                            {"operador": "menor_igual", "valor": 25, "label": "Normal"},
                        ]
                    },
                },
                {"id": "high", "type": "end"},
                {"id": "normal", "type": "end"},
            ],
            "edges": [
                {"source": "start", "target": "calc"},
                {"source": "calc", "target": "cond"},
                {"source": "cond", "target": "high", "sourceHandle": "condition-0"},
                {"source": "cond", "target": "normal", "sourceHandle": "condition-1"},
            ],
        }
    )


def _delay_flow() -> FlowDefinition:
    return _linear(
        {"id": "start", "type": "start"},
        {"id": "q", "type": "question", "data": {"opcoes": ["sim", "nao"]}},
        {"id": "wait", "type": "delay", "data": {"quantidade": 60, "tipoIntervalo": "minutos"}},
        {"id": "form", "type": "formStart", "data": {"formName": "Retorno"}},
        {"id": "end", "type": "end"},
    )


def test_bmi_scenario_runs_to_completion() -> None:
    flow = _bmi_flow()

    state = start_execution(flow, "patient-1", now=NOW).execution
    assert state.status == ExecutionStatus.in_progress
    assert state.current_node == "peso"
    assert state.total_steps == 4

    state = complete_step(flow, state, {"value": 70}, now=NOW).execution
    state = complete_step(flow, state, "1,75", now=NOW).execution
    assert state.current_node == "imc"
    state = complete_step(flow, state, now=NOW).execution

    assert round(state.calculator_results["imc"], 2) == pytest.approx(22.86)
    assert state.last_calculator_result == state.calculator_results["imc"]
    assert state.status == ExecutionStatus.completed
    assert state.completed_steps == state.total_steps
    assert state.progress == 100
    assert state.completed_at == NOW


def test_missing_binding_raises_and_leaves_execution_unchanged() -> None:
    flow = _linear(
        {"id": "start", "type": "start"},
        {"id": "imc", "type": "calculator", "data": {"operacao": "peso / (altura ^ 2)"}},
        {"id": "end", "type": "end"},
    )
    state = start_execution(flow, "patient-1", now=NOW).execution
    before = state.model_dump()

    with pytest.raises(EvaluationError):
        complete_step(flow, state, now=NOW)

    assert state.model_dump() == before


def test_invalid_number_response_is_rejected() -> None:
    flow = _linear(
        {"id": "start", "type": "start"},
        {"id": "idade", "type": "number", "data": {"nomenclatura": "idade", "tipoNumero": "inteiro"}},
        {"id": "end", "type": "end"},
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    with pytest.raises(InvalidResponseError):
        complete_step(flow, state, "trinta", now=NOW)
    with pytest.raises(InvalidResponseError):
        complete_step(flow, state, 30.5, now=NOW)


@pytest.mark.parametrize("answer", ["1e400", "inf", "-inf", "NaN", float("inf")])
def test_non_finite_number_response_is_rejected(answer) -> None:
    flow = _linear(
        {"id": "start", "type": "start"},
        {"id": "peso", "type": "number", "data": {"nomenclatura": "peso", "tipoNumero": "decimal"}},
        {"id": "end", "type": "end"},
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    with pytest.raises(InvalidResponseError):
        complete_step(flow, state, answer, now=NOW)
    assert "peso" not in state.calculator_results


def test_conditions_route_through_matched_handle() -> None:
    flow = _conditions_flow()
    state = start_execution(flow, "patient-1", now=NOW).execution

    state = complete_step(flow, state, {"a": 22.86}, now=NOW).execution
    transition = complete_step(flow, state, now=NOW)

    assert transition.match is not None
    assert transition.match.label == "Normal"
    assert transition.execution.current_node == "normal"
    assert transition.execution.question_responses["cond"] == "Normal"
    assert transition.execution.status == ExecutionStatus.completed


def test_calculator_input_fields_are_read_from_the_response() -> None:
    flow = _linear(
        {"id": "start", "type": "start"},
        {
            "id": "calc",
            "type": "calculator",
            "data": {
                "operacao": "a + b",
                "nomenclatura": "soma",
                "calculatorFields": [{"nomenclatura": "a"}, {"nomenclatura": "b"}],
            },
        },
        {"id": "end", "type": "end"},
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    state = complete_step(flow, state, {"a": "2", "b": 3}, now=NOW).execution

    assert state.calculator_results == {"a": 2.0, "b": 3.0, "soma": 5.0}


def test_unmatched_conditions_without_default_edge() -> None:
    flow = parse_flow_definition(
        {
            "id": "flow-3",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "cond", "type": "conditions", "data": {"conditions": [{"campo": "x", "operador": "maior", "valor": 1}]}},
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"source": "start", "target": "cond"},
                {"source": "cond", "target": "end", "sourceHandle": "condition-0"},
            ],
        }
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    with pytest.raises(ConditionUnresolvedError):
        complete_step(flow, state, now=NOW, strict_conditions=True)

    lenient = complete_step(flow, state, now=NOW).execution
    assert lenient.status == ExecutionStatus.completed


def test_node_without_outgoing_edges_completes_execution() -> None:
    flow = parse_flow_definition(
        {
            "id": "flow-5",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "peso", "type": "number", "data": {"nomenclatura": "peso"}},
                {"id": "orphan", "type": "number", "data": {"nomenclatura": "x"}},
            ],
            "edges": [{"source": "start", "target": "peso"}],
        }
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    state = complete_step(flow, state, 80, now=NOW).execution

    assert state.status == ExecutionStatus.completed
    assert state.completed_steps == state.total_steps


def test_edge_to_unknown_node_raises() -> None:
    flow = parse_flow_definition(
        {
            "id": "flow-6",
            "nodes": [{"id": "start", "type": "start"}],
            "edges": [{"source": "start", "target": "ghost"}],
        }
    )

    with pytest.raises(MissingEdgeError):
        start_execution(flow, "patient-1", now=NOW)


def test_question_option_routes_through_option_handle() -> None:
    flow = parse_flow_definition(
        {
            "id": "flow-4",
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "q", "type": "question", "data": {"opcoes": ["sim", "nao"], "nomenclatura": "fuma"}},
                {"id": "yes", "type": "end"},
                {"id": "other", "type": "end"},
            ],
            "edges": [
                {"source": "start", "target": "q"},
                {"source": "q", "target": "yes", "sourceHandle": "opcao-0"},
                {"source": "q", "target": "other"},
            ],
        }
    )
    state = start_execution(flow, "patient-1", now=NOW).execution

    assert complete_step(flow, state, "sim", now=NOW).execution.current_node == "yes"
    assert complete_step(flow, state, "nao", now=NOW).execution.current_node == "other"
    with pytest.raises(InvalidResponseError):
        complete_step(flow, state, "talvez", now=NOW)


def test_delay_parks_execution_until_it_elapses() -> None:
    flow = _delay_flow()
    state = start_execution(flow, "patient-1", now=NOW).execution

    transition = complete_step(flow, state, "sim", now=NOW)
    parked = transition.execution

    assert parked.current_node == "q"
    assert parked.next_step_available_at == NOW + timedelta(minutes=60)
    assert parked.current_step.node_id == "wait"
    assert transition.delay_task is not None
    assert transition.delay_task.trigger_at == NOW + timedelta(minutes=60)
    assert transition.delay_task.next_node_id == "form"
    assert transition.delay_task.form_name == "Retorno"

    with pytest.raises(ExecutionParkedError):
        complete_step(flow, parked, "sim", now=NOW)

    early = advance_after_delay(flow, parked, now=NOW + timedelta(minutes=59))
    assert early.changed is False
    assert early.execution is parked

    advanced = advance_after_delay(flow, parked, now=NOW + timedelta(minutes=60))
    assert advanced.execution.current_node == "form"
    assert advanced.execution.next_step_available_at is None
    assert [n.event for n in advanced.notifications] == ["formStart"]
    assert advanced.notifications[0].payload() == {
        "patientId": "patient-1",
        "formName": "Retorno",
        "executionId": parked.id,
    }

    again = advance_after_delay(flow, advanced.execution, now=NOW + timedelta(minutes=61))
    assert again.changed is False
    assert again.execution.current_node == "form"


def test_progress_is_monotonic_and_bounded() -> None:
    flow = _delay_flow()
    state = start_execution(flow, "patient-1", now=NOW).execution
    seen = [state.progress]

    state = complete_step(flow, state, "nao", now=NOW).execution
    seen.append(state.progress)
    state = advance_after_delay(flow, state, now=NOW + timedelta(hours=2)).execution
    seen.append(state.progress)
    state = complete_step(flow, state, now=NOW).execution
    seen.append(state.progress)

    assert seen == sorted(seen)
    assert all(0 <= value <= 100 for value in seen)
    assert state.status == ExecutionStatus.completed


def test_cancel_stops_further_steps() -> None:
    flow = _bmi_flow()
    state = start_execution(flow, "patient-1", now=NOW).execution

    cancelled = cancel_execution(state).execution

    assert cancelled.status == ExecutionStatus.cancelled
    with pytest.raises(InvalidTransitionError):
        complete_step(flow, cancelled, 70, now=NOW)
    with pytest.raises(InvalidTransitionError):
        cancel_execution(cancelled)
    assert advance_after_delay(flow, cancelled, now=NOW).changed is False


def test_inactive_flow_cannot_start() -> None:
    flow = _linear({"id": "start", "type": "start"}, {"id": "end", "type": "end"}, ativo=False)

    with pytest.raises(FlowInactiveError):
        start_execution(flow, "patient-1", now=NOW)
