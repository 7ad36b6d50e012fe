"""
Arithmetic evaluation for calculator nodes.

A calculator's ``operacao`` references values collected earlier in the flow by
name (``peso / (altura ^ 2)``). Names are replaced by their numeric values,
then the resulting arithmetic is parsed and walked against a small AST
whitelist. ``eval`` is never called.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from flow_engine.errors import EvaluationError

IDENTIFIER_PATTERN = re.compile(r"(?<![\w.])[^\W\d]\w*", re.UNICODE)

# Builder formulas may use superscript powers (``altura²``).
_SUPERSCRIPT_POWERS = {"²": "^2", "³": "^3"}

_BINARY_OPERATORS: Dict[type, Callable[[float, float], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}

_UNARY_OPERATORS: Dict[type, Callable[[float], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _as_number(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise EvaluationError(f"Value for '{name}' is not numeric: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise EvaluationError(f"Value for '{name}' is not numeric: {value!r}") from exc
    if not math.isfinite(number):
        raise EvaluationError(f"Value for '{name}' is not finite: {value!r}")
    return number


def expand_superscripts(expression: str) -> str:
    for symbol, power in _SUPERSCRIPT_POWERS.items():
        expression = expression.replace(symbol, power)
    return expression


def _format_number(value: float) -> str:
    # Positional notation only (no exponent), parenthesised so negative values
    # keep their sign under ^ and unary minus.
    return f"({format(Decimal(repr(value)), 'f')})"


def substitute_references(
    expression: str,
    bindings: Mapping[str, Any],
    references: Optional[Sequence[str]] = None,
) -> str:
    """
    Replace each referenced name in ``expression`` with its bound value.

    Matching is done on whole identifiers in a single pass, so a name that is a
    prefix of another (``peso`` / ``peso_total``) never rewrites part of it and
    substituted numbers are never matched again.
    """

    if references:
        names = list(dict.fromkeys(references))
    else:
        names = list(dict.fromkeys(match.group(0) for match in IDENTIFIER_PATTERN.finditer(expression)))
    values: Dict[str, str] = {}
    for name in names:
        if name not in bindings or bindings[name] is None:
            raise EvaluationError(f"No value found for '{name}'")
        values[name] = _format_number(_as_number(name, bindings[name]))

    if not values:
        return expression

    alternatives = "|".join(re.escape(name) for name in sorted(values, key=len, reverse=True))
    pattern = re.compile(rf"(?<![\w.])(?:{alternatives})(?![\w.])", re.UNICODE)
    return pattern.sub(lambda match: values[match.group(0)], expression)


def _evaluate_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate_node(node.body)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise EvaluationError(f"Unsupported literal {node.value!r}")
        return float(node.value)

    if isinstance(node, ast.BinOp):
        handler = _BINARY_OPERATORS.get(type(node.op))
        if handler is None:
            raise EvaluationError(f"Operator '{type(node.op).__name__}' is not allowed")
        left = _evaluate_node(node.left)
        right = _evaluate_node(node.right)
        try:
            return handler(left, right)
        except ZeroDivisionError as exc:
            raise EvaluationError("Division by zero") from exc
        except OverflowError as exc:
            raise EvaluationError("Result is too large") from exc

    if isinstance(node, ast.UnaryOp):
        handler = _UNARY_OPERATORS.get(type(node.op))
        if handler is None:
            raise EvaluationError(f"Unary op '{type(node.op).__name__}' is not allowed")
        return handler(_evaluate_node(node.operand))

    if isinstance(node, ast.Name):
        raise EvaluationError(f"Unknown variable '{node.id}' in expression")

    raise EvaluationError(f"Disallowed expression node: {type(node).__name__}")


def evaluate_arithmetic(expression: str) -> float:
    """Evaluate a purely numeric expression using ``+ - * / ^`` and parentheses."""

    text = expand_superscripts(expression).strip()
    if not text:
        raise EvaluationError("Expression is empty")

    leftover = IDENTIFIER_PATTERN.search(text)
    if leftover:
        raise EvaluationError(f"Unknown variable '{leftover.group(0)}' in expression")

    try:
        tree = ast.parse(text.replace("^", "**"), mode="eval")
    except SyntaxError as exc:
        raise EvaluationError(f"Invalid expression '{expression}'") from exc

    result = _evaluate_node(tree)
    if isinstance(result, complex):
        raise EvaluationError(f"Expression '{expression}' has no real result")
    result = float(result)
    if not math.isfinite(result):
        raise EvaluationError(f"Expression '{expression}' produced a non-finite result")
    return result


def evaluate_formula(
    expression: str,
    bindings: Mapping[str, Any],
    references: Optional[Sequence[str]] = None,
) -> float:
    """
    Evaluate a calculator formula against named numeric values.

    Args:
        expression: formula text, e.g. ``"peso / (altura ^ 2)"``
        bindings: values collected so far, by name
        references: names the formula declares; defaults to every identifier in ``expression``

    Raises:
        EvaluationError: a referenced name is unbound, the substituted text is
            not valid arithmetic, or the result is not a finite real number.
    """

    text = expand_superscripts(expression)
    return evaluate_arithmetic(substitute_references(text, bindings, references))


__all__ = ["evaluate_arithmetic", "evaluate_formula", "substitute_references"]
