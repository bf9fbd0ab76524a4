"""Comparison operators for condition nodes."""

import math
from typing import Any, Callable, Dict, Optional

from .variables import evaluate_expression, stringify
from ..models.core import ConditionDefinition


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats numbers and numeric strings alike."""
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if isinstance(left, (bool, int, float)) or isinstance(right, (bool, int, float)):
        if isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
            return False
        left_number, right_number = _to_number(left), _to_number(right)
        if left_number is None or right_number is None:
            return False
        return left_number == right_number
    return left == right


def _ordered(left: Any, right: Any, compare: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, str) and isinstance(right, str):
        return compare(left, right)
    left_number, right_number = _to_number(left), _to_number(right)
    if left_number is None or right_number is None:
        return False
    return compare(left_number, right_number)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": loose_equals,
    "not_equals": lambda left, right: not loose_equals(left, right),
    "greater_than": lambda left, right: _ordered(left, right, lambda a, b: a > b),
    "less_than": lambda left, right: _ordered(left, right, lambda a, b: a < b),
    "contains": lambda left, right: stringify(right) in stringify(left),
    "not_contains": lambda left, right: stringify(right) not in stringify(left),
    "starts_with": lambda left, right: stringify(left).startswith(stringify(right)),
    "ends_with": lambda left, right: stringify(left).endswith(stringify(right)),
    "is_empty": lambda left, right: _is_empty(left),
    "is_not_empty": lambda left, right: not _is_empty(left),
}


def evaluate_condition(condition: ConditionDefinition, variables: Dict[str, Any]) -> bool:
    """Resolve both operands and apply the operator; unknown operators are false."""
    operator = OPERATORS.get(condition.operator)
    if operator is None:
        return False
    field_value = evaluate_expression(condition.field, variables)
    compare_value = evaluate_expression(condition.value, variables)
    return bool(operator(field_value, compare_value))
