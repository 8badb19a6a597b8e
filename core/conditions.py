"""
conditions.py
--------------
Condition evaluator. Pure function of (condition, transaction).

Evaluation is total: it never raises. Anything it cannot judge (an
unresolved field, an unknown operator, a non-numeric relational comparison,
a malformed IN/BETWEEN value) evaluates to False, so a bad rule simply does
not fire instead of aborting a scan.
"""

import numbers
from typing import Any, Callable, Dict

from core.models import (
    CompoundCondition,
    Condition,
    LeafCondition,
    Logic,
    Operator,
    Transaction,
)


def evaluate(condition: Condition, transaction: Transaction) -> bool:
    """
    Evaluate a condition tree against one transaction.

    AND / OR children are evaluated left-to-right and short-circuit.
    AND over no children is True; OR over no children is False.
    """
    if isinstance(condition, CompoundCondition):
        children = (evaluate(child, transaction) for child in condition.children)
        if condition.logic is Logic.AND:
            return all(children)
        return any(children)

    if isinstance(condition, LeafCondition):
        return _evaluate_leaf(condition, transaction)

    return False


def _evaluate_leaf(leaf: LeafCondition, transaction: Transaction) -> bool:
    if leaf.field is None or leaf.operator is None:
        return False

    actual = leaf.field.read(transaction)
    if actual is None:
        return False

    return _OPERATORS[leaf.operator](actual, leaf.value)


def is_number(value: Any) -> bool:
    """Real numbers only; bools are not treated as numeric."""
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _equals(actual: Any, expected: Any) -> bool:
    if is_number(actual) and is_number(expected):
        return float(actual) == float(expected)
    return actual == expected


def _relational(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if not (is_number(actual) and is_number(expected)):
            return False
        return compare(float(actual), float(expected))
    return check


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set, frozenset)):
        return False
    return actual in expected


def _between(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple)) or len(expected) != 2:
        return False
    low, high = expected
    if not (is_number(actual) and is_number(low) and is_number(high)):
        return False
    return float(low) <= float(actual) <= float(high)


_OPERATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: _equals,
    Operator.NE: lambda actual, expected: not _equals(actual, expected),
    Operator.GT: _relational(lambda a, b: a > b),
    Operator.GE: _relational(lambda a, b: a >= b),
    Operator.LT: _relational(lambda a, b: a < b),
    Operator.LE: _relational(lambda a, b: a <= b),
    Operator.IN: _in,
    Operator.BETWEEN: _between,
}
