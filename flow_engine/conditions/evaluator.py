"""
Branching rule evaluation for ``conditions`` and ``specialConditions`` nodes.

Three rule dialects share the same contract: rules are tried top to bottom and
the first one that holds wins. Comparisons never raise; a value that cannot be
read as a number (or a field that was never answered) simply does not match,
so one malformed rule cannot block the rules after it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Union

from flow_engine.schema.models import (
    CompositeCondition,
    CompositeRule,
    ConditionsNode,
    LegacyCondition,
    LegacyOperator,
    LogicOperator,
    RuleOperator,
    SourceType,
    SpecialCondition,
    SpecialConditionsNode,
    SpecialKind,
    SpecialOperator,
)


@dataclass(frozen=True)
class Bindings:
    """Read-only view of the values an execution accumulated so far."""

    calculator_results: Mapping[str, Any] = field(default_factory=dict)
    question_responses: Mapping[str, Any] = field(default_factory=dict)
    last_calculator_result: Optional[float] = None

    def lookup(self, name: Optional[str]) -> Any:
        if not name:
            return None
        if name in self.calculator_results:
            return self.calculator_results[name]
        return self.question_responses.get(name)


@dataclass(frozen=True)
class ConditionMatch:
    """The rule that decided a branch, kept for routing and audit."""

    index: int
    kind: str
    label: str
    id: Optional[str] = None
    handle: Optional[str] = None


# -----------------------------
# Coercion helpers
# -----------------------------
def to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if "," in text and "." not in text:
            # Decimal comma as typed by patients ("1,75").
            text = text.replace(",", ".")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def _text(value: Any) -> str:
    return str(value).strip().casefold()


def _compare_numbers(op: str, left: Any, right: Any, right_end: Any = None) -> bool:
    lhs = to_number(left)
    rhs = to_number(right)
    if lhs is None or rhs is None:
        return False
    if op == "equal":
        return lhs == rhs
    if op == "not_equal":
        return lhs != rhs
    if op == "greater":
        return lhs > rhs
    if op == "less":
        return lhs < rhs
    if op == "greater_equal":
        return lhs >= rhs
    if op == "less_equal":
        return lhs <= rhs
    if op == "between":
        upper = to_number(right_end)
        if upper is None:
            return False
        return rhs <= lhs <= upper
    return False


def _values_equal(left: Any, right: Any) -> bool:
    lhs = to_number(left)
    rhs = to_number(right)
    if lhs is not None and rhs is not None:
        return lhs == rhs
    return _text(left) == _text(right)


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [value]


# -----------------------------
# Legacy conditions
# -----------------------------
_LEGACY_TO_NUMERIC = {
    LegacyOperator.equal: "equal",
    LegacyOperator.greater: "greater",
    LegacyOperator.less: "less",
    LegacyOperator.greater_equal: "greater_equal",
    LegacyOperator.less_equal: "less_equal",
    LegacyOperator.not_equal: "not_equal",
    LegacyOperator.between: "between",
}


def legacy_field_value(condition: LegacyCondition, bindings: Bindings) -> Any:
    """A legacy condition without ``campo`` reads the most recent calculator result."""
    if condition.field:
        return bindings.lookup(condition.field)
    return bindings.last_calculator_result


def legacy_condition_holds(condition: LegacyCondition, field_value: Any) -> bool:
    op = _LEGACY_TO_NUMERIC[condition.operator]
    if condition.operator == LegacyOperator.between:
        upper = condition.value_end if condition.value_end is not None else condition.value
        return _compare_numbers(op, field_value, condition.value, upper)
    return _compare_numbers(op, field_value, condition.value)


def first_legacy_match(conditions: Iterable[LegacyCondition], bindings: Bindings) -> Optional[int]:
    for index, condition in enumerate(conditions):
        if legacy_condition_holds(condition, legacy_field_value(condition, bindings)):
            return index
    return None


# -----------------------------
# Composite conditions
# -----------------------------
def rule_source_value(rule: CompositeRule, bindings: Bindings) -> Any:
    if rule.source_type == SourceType.calculation:
        return bindings.calculator_results.get(rule.source_field)
    return bindings.question_responses.get(rule.source_field)


def rule_holds(rule: CompositeRule, bindings: Bindings) -> bool:
    left = rule_source_value(rule, bindings)
    if left is None:
        return False

    op = rule.operator
    if op == RuleOperator.equal:
        if isinstance(left, (list, tuple)):
            return any(_values_equal(item, rule.value) for item in left)
        return _values_equal(left, rule.value)
    if op == RuleOperator.not_equal:
        if isinstance(left, (list, tuple)):
            return not any(_values_equal(item, rule.value) for item in left)
        return not _values_equal(left, rule.value)
    if op == RuleOperator.contains:
        if rule.value is None:
            return False
        if isinstance(left, (list, tuple, set)):
            return any(_values_equal(item, rule.value) for item in left)
        return _text(rule.value) in _text(left)
    if op == RuleOperator.in_:
        candidates = _as_list(rule.value)
        lefts = left if isinstance(left, (list, tuple, set)) else [left]
        return any(_values_equal(item, candidate) for item in lefts for candidate in candidates)
    return _compare_numbers(op.value, left, rule.value, rule.value_end)


def composite_holds(condition: CompositeCondition, bindings: Bindings) -> bool:
    if not condition.rules:
        return False
    results = (rule_holds(rule, bindings) for rule in condition.rules)
    if condition.logic == LogicOperator.OR:
        return any(results)
    return all(results)


def first_composite_match(conditions: Iterable[CompositeCondition], bindings: Bindings) -> Optional[int]:
    for index, condition in enumerate(conditions):
        if composite_holds(condition, bindings):
            return index
    return None


# -----------------------------
# Special conditions
# -----------------------------
_SPECIAL_TO_NUMERIC = {
    SpecialOperator.equal: "equal",
    SpecialOperator.greater: "greater",
    SpecialOperator.less: "less",
    SpecialOperator.greater_equal: "greater_equal",
    SpecialOperator.less_equal: "less_equal",
    SpecialOperator.not_equal: "not_equal",
    SpecialOperator.between: "between",
}


def special_condition_holds(condition: SpecialCondition, bindings: Bindings) -> bool:
    value = bindings.lookup(condition.field)
    if value is None:
        return False

    if condition.kind == SpecialKind.numeric:
        op = _SPECIAL_TO_NUMERIC.get(condition.operator)
        if op is None:
            return False
        return _compare_numbers(op, value, condition.value, condition.value_end)

    answer = _text(value)
    expected = _text(condition.value)
    if condition.operator == SpecialOperator.equal:
        return answer == expected
    if condition.operator == SpecialOperator.not_equal:
        return answer != expected
    if condition.operator == SpecialOperator.contains:
        return expected in answer
    return False


def first_special_match(conditions: Iterable[SpecialCondition], bindings: Bindings) -> Optional[int]:
    for index, condition in enumerate(conditions):
        if special_condition_holds(condition, bindings):
            return index
    return None


# -----------------------------
# Node level entry point
# -----------------------------
def evaluate_conditions(
    node: Union[ConditionsNode, SpecialConditionsNode],
    bindings: Bindings,
) -> Optional[ConditionMatch]:
    """
    Return the first rule of ``node`` that holds for ``bindings``, or None.

    For ``conditions`` nodes, legacy entries come first and composite entries
    follow; entry ``i`` of that combined list routes through the
    ``condition-<i>`` edge. ``specialConditions`` entries route through
    ``special-condition-<i>``.
    """

    if isinstance(node, SpecialConditionsNode):
        index = first_special_match(node.data.conditions, bindings)
        if index is None:
            return None
        condition = node.data.conditions[index]
        return ConditionMatch(
            index=index,
            kind="special",
            label=condition.label,
            id=condition.id,
            handle=f"special-condition-{index}",
        )

    legacy = node.data.conditions
    index = first_legacy_match(legacy, bindings)
    if index is not None:
        return ConditionMatch(
            index=index,
            kind="legacy",
            label=legacy[index].label,
            id=legacy[index].id,
            handle=f"condition-{index}",
        )

    composites = node.data.composite_conditions
    index = first_composite_match(composites, bindings)
    if index is not None:
        position = len(legacy) + index
        return ConditionMatch(
            index=position,
            kind="composite",
            label=composites[index].label,
            id=composites[index].id,
            handle=f"condition-{position}",
        )
    return None


__all__ = [
    "Bindings",
    "ConditionMatch",
    "composite_holds",
    "evaluate_conditions",
    "legacy_condition_holds",
    "rule_holds",
    "special_condition_holds",
    "to_number",
]
