"""Filter Predicate Engine — evaluate one filter condition against one value.

Semantics:

* A missing field is treated exactly like an empty one (None).
* ``equals`` is type-aware: numbers compare numerically, dates by instant,
  booleans against true/false, everything else by exact string match.
* Text operators (contains / starts_with / ends_with and negations) are
  case-insensitive and work on the value's text form.
* Ordering operators return False when either side is not orderable or the
  two sides are of different kinds; they never raise.
* ``in`` / ``not_in`` require a list compare value; a list-valued field is
  "in" when any of its elements is.

An unknown operator raises ConfigurationError: it means the schedule
definition is broken, not that the record data is unusual.
"""

from datetime import datetime
from typing import Any, Callable

from core.errors import ConfigurationError
from query.definition import FilterOperator, ScheduleFilter
from records.models import parse_datetime, parse_number

_TRUE_WORDS = {"true", "yes", "1"}
_FALSE_WORDS = {"false", "no", "0"}


# ── Value helpers ─────────────────────────────────────────────────────────────

def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ", ".join(as_text(v) for v in value)
    return str(value)


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def _orderable(value: Any, hint: Any = None) -> tuple[str, Any] | None:
    """Return (kind, key) for ordering, or None when not orderable.

    Strings are read as numbers first; as dates only when *hint* is a date.
    """
    if isinstance(value, datetime):
        return "date", parse_datetime(value)
    number = parse_number(value)
    if number is not None:
        return "number", number
    if isinstance(value, str) and isinstance(hint, datetime):
        dt = parse_datetime(value)
        if dt is not None:
            return "date", dt
    return None


def values_equal(actual: Any, expected: Any) -> bool:
    if is_empty(actual):
        return is_empty(expected)
    if isinstance(actual, (list, tuple)):
        if not isinstance(expected, (list, tuple)):
            return False
        return len(actual) == len(expected) and all(
            values_equal(a, e) for a, e in zip(actual, expected)
        )
    if isinstance(actual, bool):
        return _as_bool(expected) == actual
    if isinstance(actual, datetime):
        other = parse_datetime(expected)
        return other is not None and other == actual
    if isinstance(actual, (int, float)):
        other = parse_number(expected)
        return other is not None and other == actual
    if isinstance(expected, (int, float)) and not isinstance(expected, bool):
        number = parse_number(actual)
        return number is not None and number == expected
    return as_text(actual) == as_text(expected)


def _compare(actual: Any, expected: Any, check: Callable[[Any, Any], bool]) -> bool:
    left = _orderable(actual, hint=expected)
    right = _orderable(expected, hint=actual)
    if left is None or right is None or left[0] != right[0]:
        return False
    return check(left[1], right[1])


def _members(expected: Any) -> list:
    if not isinstance(expected, (list, tuple, set)):
        raise ConfigurationError(
            f"Operator 'in'/'not_in' requires a list value, got {type(expected).__name__}"
        )
    return list(expected)


def _is_in(actual: Any, expected: Any) -> bool:
    members = _members(expected)
    candidates = actual if isinstance(actual, (list, tuple)) else [actual]
    return any(values_equal(c, m) for c in candidates for m in members)


# ── Operator table ────────────────────────────────────────────────────────────

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    FilterOperator.EQUALS.value:
        values_equal,
    FilterOperator.NOT_EQUALS.value:
        lambda a, e: not values_equal(a, e),
    FilterOperator.CONTAINS.value:
        lambda a, e: as_text(e).lower() in as_text(a).lower(),
    FilterOperator.NOT_CONTAINS.value:
        lambda a, e: as_text(e).lower() not in as_text(a).lower(),
    FilterOperator.STARTS_WITH.value:
        lambda a, e: as_text(a).lower().startswith(as_text(e).lower()),
    FilterOperator.ENDS_WITH.value:
        lambda a, e: as_text(a).lower().endswith(as_text(e).lower()),
    FilterOperator.IS_EMPTY.value:
        lambda a, e: is_empty(a),
    FilterOperator.IS_NOT_EMPTY.value:
        lambda a, e: not is_empty(a),
    FilterOperator.GREATER_THAN.value:
        lambda a, e: _compare(a, e, lambda x, y: x > y),
    FilterOperator.LESS_THAN.value:
        lambda a, e: _compare(a, e, lambda x, y: x < y),
    FilterOperator.GREATER_OR_EQUAL.value:
        lambda a, e: _compare(a, e, lambda x, y: x >= y),
    FilterOperator.LESS_OR_EQUAL.value:
        lambda a, e: _compare(a, e, lambda x, y: x <= y),
    FilterOperator.IN.value:
        _is_in,
    FilterOperator.NOT_IN.value:
        lambda a, e: not _is_in(a, e),
}


def evaluate(field_value: Any, operator: str, compare_value: Any) -> bool:
    """Evaluate ``field_value <operator> compare_value``."""
    fn = _OPERATORS.get(operator)
    if fn is None:
        raise ConfigurationError(f"Unknown filter operator '{operator}'")
    return fn(field_value, compare_value)


def evaluate_filter(data: dict[str, Any], f: ScheduleFilter) -> bool:
    """Evaluate a ScheduleFilter against a record's field mapping."""
    return evaluate(data.get(f.field), f.operator, f.value)
