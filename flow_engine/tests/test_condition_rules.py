from __future__ import annotations

import pytest

from flow_engine.conditions.evaluator import Bindings, evaluate_conditions, to_number
from flow_engine.schema.models import ConditionsNode, SpecialConditionsNode


def _conditions_node(conditions: list | None = None, composite: list | None = None) -> ConditionsNode:
    return ConditionsNode.model_validate(
        {
            "id": "cond",
            "type": "conditions",
            "data": {"conditions": conditions or [], "compositeConditions": composite or []},
        }
    )


def _special_node(conditions: list) -> SpecialConditionsNode:
    return SpecialConditionsNode.model_validate(
        {"id": "special", "type": "specialConditions", "data": {"condicoesEspeciais": conditions}}
    )


def _composite(logic: str) -> dict:
    return {
        "id": "combo",
        "label": "Combo",
        "logic": logic,
        "rules": [
            {"sourceType": "calculation", "sourceField": "x", "operator": "gt", "value": 10},
            {"sourceType": "calculation", "sourceField": "y", "operator": "lt", "value": 5},
        ],
    }


def test_first_matching_legacy_condition_wins() -> None:
    node = _conditions_node(
        [
            {"campo": "x", "operador": "maior", "valor": 10, "label": "A"},
            {"campo": "x", "operador": "maior", "valor": 5, "label": "B"},
        ]
    )

    match = evaluate_conditions(node, Bindings(calculator_results={"x": 12}))

    assert match is not None
    assert match.label == "A"
    assert match.handle == "condition-0"


def test_legacy_condition_without_field_reads_last_calculator_result() -> None:
    node = _conditions_node(
        [
            {"operador": "maior", "valor": 25, "label": "Alto"},
            {"operador": "menor_igual", "valor": 25, "label": "Normal"},
        ]
    )

    match = evaluate_conditions(node, Bindings(last_calculator_result=22.86))

    assert match is not None
    assert match.label == "Normal"
    assert match.handle == "condition-1"


@pytest.mark.parametrize(
    "y, logic, expected",
    [
        (3, "AND", True),
        (8, "AND", False),
        (8, "OR", True),
        (8, "or", True),
    ],
)
def test_composite_logic(y: int, logic: str, expected: bool) -> None:
    node = _conditions_node(composite=[_composite(logic)])

    match = evaluate_conditions(node, Bindings(calculator_results={"x": 12, "y": y}))

    assert (match is not None) is expected


def test_composite_handles_follow_legacy_entries() -> None:
    node = _conditions_node(
        [{"campo": "x", "operador": "menor", "valor": 0, "label": "Negative"}],
        [_composite("AND")],
    )

    match = evaluate_conditions(node, Bindings(calculator_results={"x": 12, "y": 1}))

    assert match is not None
    assert match.kind == "composite"
    assert match.handle == "condition-1"


def test_composite_without_rules_never_matches() -> None:
    node = _conditions_node(composite=[{"label": "Empty", "logic": "AND", "rules": []}])

    assert evaluate_conditions(node, Bindings(calculator_results={"x": 1})) is None


@pytest.mark.parametrize("value, expected", [(10, True), (20, True), (15, True), (9.99, False), (20.01, False)])
def test_between_is_inclusive(value: float, expected: bool) -> None:
    legacy = _conditions_node([{"campo": "x", "operador": "entre", "valor": 10, "valorFinal": 20, "label": "In"}])
    composite = _conditions_node(
        composite=[
            {
                "label": "In",
                "rules": [
                    {
                        "sourceType": "calculation",
                        "sourceField": "x",
                        "operator": "between",
                        "value": 10,
                        "valueEnd": 20,
                    }
                ],
            }
        ]
    )
    bindings = Bindings(calculator_results={"x": value})

    assert (evaluate_conditions(legacy, bindings) is not None) is expected
    assert (evaluate_conditions(composite, bindings) is not None) is expected


def test_unparsable_values_do_not_match_and_do_not_block_later_rules() -> None:
    node = _conditions_node(
        [
            {"campo": "x", "operador": "maior", "valor": "abc", "label": "Broken"},
            {"campo": "x", "operador": "maior", "valor": 1, "label": "Fine"},
        ]
    )

    match = evaluate_conditions(node, Bindings(calculator_results={"x": 5}))

    assert match is not None
    assert match.label == "Fine"


def test_question_rule_compares_text_case_insensitively() -> None:
    node = _conditions_node(
        composite=[
            {
                "label": "Smoker",
                "rules": [
                    {"sourceType": "question", "sourceField": "fuma", "operator": "equal", "value": "sim"},
                ],
            }
        ]
    )

    assert evaluate_conditions(node, Bindings(question_responses={"fuma": "Sim"})) is not None
    assert evaluate_conditions(node, Bindings(question_responses={"fuma": "Não"})) is None


def test_special_conditions_support_contains_and_numeric_checks() -> None:
    node = _special_node(
        [
            {"tipo": "numerico", "campo": "imc", "operador": "maior_igual", "valor": 30, "label": "Obeso"},
            {"tipo": "pergunta", "campo": "sintomas", "operador": "contem", "valor": "dor", "label": "Dor"},
        ]
    )

    by_number = evaluate_conditions(node, Bindings(calculator_results={"imc": 31}))
    by_text = evaluate_conditions(node, Bindings(question_responses={"sintomas": "Dor de cabeça"}))

    assert by_number is not None and by_number.handle == "special-condition-0"
    assert by_text is not None and by_text.label == "Dor"
    assert by_text.handle == "special-condition-1"


def _single_rule(source_type: str, operator: str, value) -> ConditionsNode:
    return _conditions_node(
        composite=[
            {
                "label": "Rule",
                "rules": [{"sourceType": source_type, "sourceField": "f", "operator": operator, "value": value}],
            }
        ]
    )


@pytest.mark.parametrize(
    "answer, operator, value, expected",
    [
        ("Dor de Cabeça", "contains", "cabeça", True),
        ("Dor de cabeça", "contains", "febre", False),
        (["Febre", "Tosse"], "contains", "tosse", True),
        (["Febre", "Tosse"], "contains", "dor", False),
        ("Dor", "contains", None, False),
        ("b", "in", ["a", "B", "c"], True),
        ("d", "in", ["a", "b"], False),
        ("Azul", "in", "verde, azul ,vermelho", True),
        ("roxo", "in", "verde, azul", False),
        (["x", "azul"], "in", "verde,azul", True),
        ("sim", "not_equal", "Não", True),
        ("Sim", "ne", "sim", False),
        (["Febre", "Tosse"], "not_equal", "dor", True),
        (["Febre", "Tosse"], "not_equal", "febre", False),
        (["Febre", "Tosse"], "eq", "TOSSE", True),
    ],
)
def test_question_rule_operators(answer, operator: str, value, expected: bool) -> None:
    node = _single_rule("question", operator, value)

    match = evaluate_conditions(node, Bindings(question_responses={"f": answer}))

    assert (match is not None) is expected


@pytest.mark.parametrize(
    "result, operator, value, expected",
    [
        (5, "in", [1, 5, 9], True),
        (5, "in", "1, 5.0, 9", True),
        (4, "in", "1,5", False),
        (5, "ne", 5.0, False),
        (5, "not_equal", "6", True),
        (12.5, "gte", "12,5", True),
        (12.5, "lte", 12, False),
    ],
)
def test_calculation_rule_operators(result: float, operator: str, value, expected: bool) -> None:
    node = _single_rule("calculation", operator, value)

    match = evaluate_conditions(node, Bindings(calculator_results={"f": result}))

    assert (match is not None) is expected


def test_unanswered_field_never_matches_not_equal() -> None:
    node = _single_rule("question", "not_equal", "sim")

    assert evaluate_conditions(node, Bindings()) is None


@pytest.mark.parametrize(
    "answer, operator, value, expected",
    [
        ("SIM", "igual", "sim", True),
        (" Sim ", "igual", "SIM", True),
        ("Não", "igual", "sim", False),
        ("Não", "diferente", "SIM", True),
        ("sIm", "diferente", "Sim", False),
        ("Tenho DOR no peito", "contem", "dor", True),
        ("Tenho febre", "contem", "Dor", False),
        ("sim", "maior", "não", False),
    ],
)
def test_special_question_operators_ignore_case(answer: str, operator: str, value: str, expected: bool) -> None:
    node = _special_node([{"tipo": "pergunta", "campo": "q", "operador": operator, "valor": value, "label": "Q"}])

    match = evaluate_conditions(node, Bindings(question_responses={"q": answer}))

    assert (match is not None) is expected
    if expected:
        assert match.handle == "special-condition-0"


def test_special_between_without_upper_bound_does_not_match() -> None:
    node = _special_node([{"tipo": "numerico", "campo": "x", "operador": "entre", "valor": 1, "label": "Range"}])

    assert evaluate_conditions(node, Bindings(calculator_results={"x": 5})) is None


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,75", 1.75),
        ("  42 ", 42.0),
        (3, 3.0),
        ("", None),
        ("abc", None),
        (True, None),
        (None, None),
        ("inf", None),
        ("-Infinity", None),
        ("1e400", None),
        (float("inf"), None),
        ("nan", None),
    ],
)
def test_to_number(raw, expected) -> None:
    assert to_number(raw) == expected
