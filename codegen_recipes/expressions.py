"""Evaluation of step `when` conditions.

Conditions are small Python-like expressions over run variables::

    when: "framework == 'fastapi' and not skip_tests"
    when: "{{options.auth}}"

Only comparisons, boolean operators, literals and (dotted) variable names are
allowed. Anything else raises ``ExpressionError``.
"""

import ast
import operator
import re
from typing import Any

from .errors import ExpressionError

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+(?:\.\w+)*)\s*\}\}")

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "none": None}


def _resolve_name(name: str, variables: dict[str, Any]) -> Any:
    if name in variables:
        return variables[name]
    if name.lower() in _LITERAL_NAMES:
        return _LITERAL_NAMES[name.lower()]
    available = ", ".join(sorted(variables.keys())) or "none"
    raise ExpressionError(f"Undefined variable in condition: '{name}'. Available variables: {available}")


def _evaluate(node: ast.AST, variables: dict[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body, variables)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return _resolve_name(node.id, variables)
    if isinstance(node, ast.Attribute):
        base = _evaluate(node.value, variables)
        if isinstance(base, dict):
            if node.attr not in base:
                raise ExpressionError(f"Key '{node.attr}' not found in condition")
            return base[node.attr]
        raise ExpressionError(f"Cannot access '{node.attr}' on a {type(base).__name__}")
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_evaluate(elt, variables) for elt in node.elts]
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return not _evaluate(node.operand, variables)
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_evaluate(value, variables) for value in node.values)
        return any(_evaluate(value, variables) for value in node.values)
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, variables)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, variables)
            try:
                if not _COMPARISONS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(f"Cannot compare {left!r} and {right!r}: {e}") from e
            left = right
        return True
    raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_condition(expression: str, variables: dict[str, Any]) -> bool:
    """Evaluate a condition against run variables.

    Raises:
        ExpressionError: If the expression is malformed or references an
            undefined variable
    """
    source = _PLACEHOLDER.sub(lambda m: m.group(1), expression).strip()
    if not source:
        raise ExpressionError("Condition is empty")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid condition '{expression}': {e.msg}") from e
    return bool(_evaluate(tree, variables))
