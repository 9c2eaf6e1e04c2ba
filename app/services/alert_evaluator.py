"""Alert Condition Evaluator - turns a query outcome into an alert verdict"""

import operator as op
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from app.schemas.scheduled_query import AlertConditionType


OPERATOR_TEXT = {
    "=": "equals",
    "!=": "does not equal",
    ">": "is greater than",
    "<": "is less than",
    ">=": "is greater than or equal to",
    "<=": "is less than or equal to",
}

_COMPARATORS = {
    "=": op.eq,
    "!=": op.ne,
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
}


@dataclass(frozen=True)
class Rows:
    """Successful outcome: the result rows"""
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Failure:
    """Failed outcome: the error message"""
    message: str


QueryOutcome = Union[Rows, Failure]


@dataclass(frozen=True)
class AlertVerdict:
    condition_type: str
    reason: str
    triggered: bool = True


def operator_text(operator: str) -> str:
    """Render an operator for notification text, e.g. ``>`` -> ``is greater than``"""
    operator = getattr(operator, "value", operator)
    return OPERATOR_TEXT.get(operator, operator)


def _format_value(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def compare_values(actual: Any, expected: Any, operator: str) -> bool:
    """
    Compare two values with a condition operator.

    Numeric-looking strings (and Decimals) are coerced to numbers first, so
    a column returned as ``"12.5"`` compares numerically with ``10``.
    Values that cannot be ordered against each other never match an
    ordering operator.
    """
    operator = getattr(operator, "value", operator)
    comparator = _COMPARATORS.get(operator)
    if comparator is None:
        return False

    left, right = _to_number(actual), _to_number(expected)
    try:
        return bool(comparator(left, right))
    except TypeError:
        return False


def evaluate(conditions: Sequence[Any], outcome: QueryOutcome) -> Optional[AlertVerdict]:
    """
    Evaluate alert conditions against a query outcome.

    A Failure always yields an ERROR verdict, whatever is configured. With
    no conditions every successful run triggers an ALWAYS verdict. Otherwise
    the first condition that matches, in list order, wins; if none matches
    the result is None (no notification).

    Args:
        conditions: Ordered alert conditions
        outcome: Rows or Failure

    Returns:
        The verdict, or None when nothing should be sent
    """
    if isinstance(outcome, Failure):
        return AlertVerdict(
            condition_type=AlertConditionType.ERROR.value,
            reason=f"Query execution failed: {outcome.message}",
        )

    if not conditions:
        return AlertVerdict(
            condition_type=AlertConditionType.ALWAYS.value,
            reason="Query executed successfully",
        )

    rows = outcome.rows
    for condition in conditions:
        verdict = _evaluate_one(condition, rows)
        if verdict is not None:
            return verdict
    return None


def _evaluate_one(condition: Any, rows: List[Dict[str, Any]]) -> Optional[AlertVerdict]:
    kind = condition.type

    if kind == AlertConditionType.ALWAYS:
        return AlertVerdict(kind, "Query executed successfully")

    if kind == AlertConditionType.NO_RESULTS:
        if not rows:
            return AlertVerdict(kind, "Query returned no results")
        return None

    if kind == AlertConditionType.ROWS_COUNT:
        if compare_values(len(rows), condition.value, condition.operator):
            return AlertVerdict(
                kind,
                f"Row count {operator_text(condition.operator)} {_format_value(condition.value)}",
            )
        return None

    if kind == AlertConditionType.CUSTOM_CONDITION:
        column = condition.column_name
        if any(
            column in row and compare_values(row[column], condition.value, condition.operator)
            for row in rows
        ):
            return AlertVerdict(
                kind,
                f"Column '{column}' has values {operator_text(condition.operator)} "
                f"{_format_value(condition.value)}",
            )
        return None

    # ERROR conditions only fire on Failure outcomes
    return None
