"""
Variable Store — the named key/value bag attached to every flow session.

Historically sessions persisted their variables either as an array of
``{id, name, value}`` records or as a plain ``{name: value}`` map. Both shapes
are accepted here exactly once, at the model boundary, and normalized into an
insertion-ordered ``dict[str, Variable]`` keyed by name. Everything downstream
works with that canonical map; persistence writes the array-of-records shape.
"""
from __future__ import annotations

import uuid
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field


class _Missing:
    """Sentinel for 'no such variable' (distinct from a stored None)."""

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING: Any = _Missing()


class Variable(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    value: Any = None


def _is_record(item: Any) -> bool:
    return isinstance(item, Variable) or (isinstance(item, Mapping) and "name" in item)


def normalize_variables(raw: Any) -> dict[str, Variable]:
    """
    Accept a list of records, a plain name→value map, or an already
    normalized map, and return the canonical ordered map.

    Later records with a duplicated name win, mirroring an upsert.
    """
    if raw is None:
        return {}

    result: dict[str, Variable] = {}

    if isinstance(raw, Mapping):
        for name, value in raw.items():
            if isinstance(value, Variable):
                result[str(name)] = value
            else:
                result[str(name)] = Variable(name=str(name), value=value)
        return result

    if isinstance(raw, Iterable) and not isinstance(raw, (str, bytes)):
        for item in raw:
            if not _is_record(item):
                continue
            var = item if isinstance(item, Variable) else Variable(
                id=str(item.get("id") or uuid.uuid4()),
                name=str(item["name"]),
                value=item.get("value"),
            )
            if not var.name:
                continue
            result[var.name] = var
        return result

    return {}


def get_variable(variables: Any, name: str, default: Any = MISSING) -> Any:
    """Look up a variable value by name in any accepted shape."""
    store = variables if _is_canonical(variables) else normalize_variables(variables)
    var = store.get(name)
    return var.value if var is not None else default


def set_variable(variables: Any, name: str, value: Any) -> dict[str, Variable]:
    """
    Upsert a variable and return a new canonical map.
    An existing variable keeps its id and position.
    """
    store = dict(variables) if _is_canonical(variables) else normalize_variables(variables)
    existing = store.get(name)
    if existing is not None:
        store[name] = existing.model_copy(update={"value": value})
    else:
        store[name] = Variable(name=name, value=value)
    return store


def set_variables(variables: Any, values: Mapping[str, Any]) -> dict[str, Variable]:
    store = variables
    for name, value in values.items():
        store = set_variable(store, name, value)
    return store if _is_canonical(store) else normalize_variables(store)


def variables_to_records(variables: Any) -> list[dict[str, Any]]:
    """Array-of-records shape used for persistence."""
    store = variables if _is_canonical(variables) else normalize_variables(variables)
    return [v.model_dump(mode="json") for v in store.values()]


def variables_to_mapping(variables: Any) -> dict[str, Any]:
    """Plain name→value view, handy for templating and logging."""
    store = variables if _is_canonical(variables) else normalize_variables(variables)
    return {name: v.value for name, v in store.items()}


def _is_canonical(variables: Any) -> bool:
    return isinstance(variables, dict) and all(isinstance(v, Variable) for v in variables.values())
