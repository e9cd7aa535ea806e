"""Condition tree evaluation.

``evaluate(tree, context)`` is a pure function of its inputs. Anything that
cannot be evaluated (a missing field, a type mismatch, an unparseable date)
makes the leaf ``False`` instead of raising, so that partially populated
applications never break an evaluation pass.
"""

import datetime
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Callable

from pydantic import BaseModel

from sluice.model import (
    Combinator,
    ConditionGroup,
    ConditionLeaf,
    ConditionTree,
    Operator,
    Transition,
)

MISSING = object()

_COLLECTIONS = (list, tuple, set, frozenset)


def resolve_path(context: Any, path: str) -> Any:
    """Look up a dotted path; returns MISSING when any segment is absent."""
    current = context
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        elif isinstance(current, BaseModel):
            if part not in type(current).model_fields:
                return MISSING
            current = getattr(current, part)
        else:
            return MISSING
    return current


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float, Decimal)) and not isinstance(v, bool)


def _to_datetime(v: Any) -> datetime.datetime | None:
    if isinstance(v, datetime.datetime):
        return v
    if isinstance(v, datetime.date):
        return datetime.datetime.combine(v, datetime.time())
    if isinstance(v, str):
        try:
            return datetime.datetime.fromisoformat(v)
        except ValueError:
            return None
    return None


def _ordered_pair(actual: Any, expected: Any) -> tuple[Any, Any] | None:
    if _is_number(actual) and _is_number(expected):
        return actual, expected
    if isinstance(actual, bool) or isinstance(expected, bool):
        return None
    a, b = _to_datetime(actual), _to_datetime(expected)
    if a is None or b is None:
        return None
    # Naive timestamps are taken to be UTC.
    if a.tzinfo is None and b.tzinfo is not None:
        a = a.replace(tzinfo=datetime.timezone.utc)
    elif b.tzinfo is None and a.tzinfo is not None:
        b = b.replace(tzinfo=datetime.timezone.utc)
    return a, b


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return (
            isinstance(actual, bool)
            and isinstance(expected, bool)
            and actual == expected
        )
    if _is_number(actual) and _is_number(expected):
        return actual == expected
    if _is_number(actual) != _is_number(expected):
        return False
    return actual == expected


def _not_equals(actual: Any, expected: Any) -> bool:
    return not _equals(actual, expected)


def _ordering(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        pair = _ordered_pair(actual, expected)
        if pair is None:
            return False
        return compare(*pair)

    return op


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, _COLLECTIONS):
        return any(_equals(item, expected) for item in actual)
    return False


def _not_contains(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, (str, *_COLLECTIONS)):
        return False
    return not _contains(actual, expected)


def _is_scalar(v: Any) -> bool:
    return not isinstance(v, (Mapping, *_COLLECTIONS))


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, _COLLECTIONS) or not _is_scalar(actual):
        return False
    return any(_equals(actual, item) for item in expected)


def _not_in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, _COLLECTIONS) or not _is_scalar(actual):
        return False
    return not any(_equals(actual, item) for item in expected)


def _starts_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)


def _ends_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)


OPERATORS: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: _equals,
    Operator.NE: _not_equals,
    Operator.GT: _ordering(lambda a, b: a > b),
    Operator.GE: _ordering(lambda a, b: a >= b),
    Operator.LT: _ordering(lambda a, b: a < b),
    Operator.LE: _ordering(lambda a, b: a <= b),
    Operator.CONTAINS: _contains,
    Operator.NOT_CONTAINS: _not_contains,
    Operator.IN: _in,
    Operator.NOT_IN: _not_in,
    Operator.STARTS_WITH: _starts_with,
    Operator.ENDS_WITH: _ends_with,
}


def evaluate_leaf(leaf: ConditionLeaf, context: Any) -> bool:
    actual = resolve_path(context, leaf.field)
    if actual is MISSING:
        return False
    try:
        return bool(OPERATORS[leaf.operator](actual, leaf.value))
    except (TypeError, ValueError, ArithmeticError):
        return False


def evaluate(tree: ConditionTree, context: Any) -> bool:
    """Evaluate a condition tree against a read-only data snapshot.

    An empty ``ALL`` group is true and an empty ``ANY`` group is false.
    """
    if isinstance(tree, ConditionGroup):
        if tree.combinator is Combinator.ALL:
            return all(evaluate(child, context) for child in tree.children)
        return any(evaluate(child, context) for child in tree.children)
    return evaluate_leaf(tree, context)


def is_eligible(transition: Transition, context: Any) -> bool:
    """A transition without a condition is always eligible."""
    if transition.condition is None:
        return True
    return evaluate(transition.condition, context)
