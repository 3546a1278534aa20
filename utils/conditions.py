"""
Shared condition operators — used by condition nodes and tool targeting.

Each operator takes the resolved field value and the (already interpolated)
compare value and returns a bool. Operators never raise: a value that cannot
be compared (non-numeric for ``greaterThan``, an invalid regex) evaluates
to False.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Optional


def get_nested_value(data: Any, field: str) -> Any:
    """
    Get a value from nested dicts/lists using dot notation.
    e.g. 'order.status', 'items.0.id', '$.data.total'
    """
    if field.startswith("$."):
        field = field[2:]
    elif field == "$":
        return data
    current = data
    for part in field.split("."):
        if part == "":
            continue
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            idx = int(part)
            if -len(current) <= idx < len(current):
                current = current[idx]
            else:
                return None
        else:
            return None
    return current


# ── Coercion helpers ──────────────────────────────────────────

def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(as_text(v) for v in value)
    return str(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def split_list(compare: Any) -> list[str]:
    """Comma-separated literal list → trimmed, lower-cased items."""
    if isinstance(compare, (list, tuple)):
        items = [as_text(v) for v in compare]
    else:
        items = as_text(compare).split(",")
    return [i.strip().lower() for i in items if i.strip()]


def _numeric(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        x, y = _as_number(a), _as_number(b)
        if x is None or y is None:
            return False
        return fn(x, y)
    return compare


def _regex(a: Any, b: Any) -> bool:
    try:
        return re.search(as_text(b), as_text(a)) is not None
    except re.error:
        return False


def _not_regex(a: Any, b: Any) -> bool:
    try:
        return re.search(as_text(b), as_text(a)) is None
    except re.error:
        return False


def _list_key(value: Any) -> str:
    return as_text(value).strip().lower()


def _in_list(a: Any, b: Any) -> bool:
    allowed = split_list(b)
    if isinstance(a, (list, tuple)):
        return any(_list_key(v) in allowed for v in a)
    return _list_key(a) in allowed


def _not_in_list(a: Any, b: Any) -> bool:
    excluded = split_list(b)
    if isinstance(a, (list, tuple)):
        return not any(_list_key(v) in excluded for v in a)
    return _list_key(a) not in excluded


def _contains(a: Any, b: Any) -> bool:
    return as_text(b).lower() in as_text(a).lower()


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equalTo": lambda a, b: as_text(a) == as_text(b),
    "notEqual": lambda a, b: as_text(a) != as_text(b),
    "notEqualTo": lambda a, b: as_text(a) != as_text(b),
    "contains": _contains,
    "doesNotContain": lambda a, b: not _contains(a, b),
    "notContains": lambda a, b: not _contains(a, b),
    "greaterThan": _numeric(lambda x, y: x > y),
    "lessThan": _numeric(lambda x, y: x < y),
    "greaterThanOrEqual": _numeric(lambda x, y: x >= y),
    "lessThanOrEqual": _numeric(lambda x, y: x <= y),
    "isSet": lambda a, b: not _is_empty(a),
    "isEmpty": lambda a, b: _is_empty(a),
    "startsWith": lambda a, b: as_text(a).lower().startswith(as_text(b).lower()),
    "endsWith": lambda a, b: as_text(a).lower().endswith(as_text(b).lower()),
    "matchesRegex": _regex,
    "doesNotMatchRegex": _not_regex,
    "inList": _in_list,
    "notInList": _not_in_list,
}


def apply_operator(operator: str, field_value: Any, compare_value: Any) -> bool:
    """Apply a named operator. Unknown operators evaluate to False."""
    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    try:
        return bool(fn(field_value, compare_value))
    except (TypeError, ValueError):
        return False


def combine(logic_operator: str, results: list[bool]) -> bool:
    """AND → all, anything else → OR."""
    if (logic_operator or "AND").upper() == "AND":
        return all(results)
    return any(results)
