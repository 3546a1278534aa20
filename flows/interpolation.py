"""
Text interpolation — ``{{name}}`` placeholders resolved against session variables.

Resolution order for ``{{key}}``:
  1. a variable named exactly ``key`` (names may contain dots)
  2. ``head.rest`` where ``head`` is a variable: dot path into its value
  3. ``customer.x`` / ``chat.x`` from the conversation context, when given

Unresolved placeholders are left untouched so authors can see them.
"""
from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from models.flow import FlowSession
from models.variables import MISSING, Variable, normalize_variables
from utils.conditions import get_nested_value

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")


def _variables_of(source: Any) -> dict[str, Variable]:
    if isinstance(source, FlowSession):
        return source.variables
    if isinstance(source, dict) and all(isinstance(v, Variable) for v in source.values()):
        return source
    return normalize_variables(source)


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def _as_data(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return obj


def resolve_placeholder(
    key: str,
    variables: dict[str, Variable],
    context: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Value for one placeholder key, or MISSING."""
    var = variables.get(key)
    if var is not None:
        return var.value

    head, _, rest = key.partition(".")
    if rest:
        var = variables.get(head)
        if var is not None:
            value = get_nested_value(var.value, rest) if isinstance(var.value, (dict, list)) else None
            return MISSING if value is None else value
        if context and head in context:
            data = _as_data(context[head])
            value = get_nested_value(data, rest)
            if value is None and isinstance(data, dict):
                # customer.<custom field>
                value = get_nested_value(data.get("custom_fields") or {}, rest)
            return MISSING if value is None else value
    return MISSING


def replace_variables(
    text: Any,
    source: Any,
    context: Optional[Mapping[str, Any]] = None,
) -> Any:
    """
    Replace ``{{name}}`` placeholders in ``text``.

    ``source`` is a FlowSession or any variable-store shape (array of
    ``{id, name, value}`` records or a plain map). Non-string ``text`` is
    returned unchanged.
    """
    if not isinstance(text, str) or "{{" not in text:
        return text
    variables = _variables_of(source)

    def substitute(match: re.Match) -> str:
        value = resolve_placeholder(match.group(1).strip(), variables, context)
        if value is MISSING:
            return match.group(0)
        return _render(value)

    return PLACEHOLDER.sub(substitute, text)


def interpolate_value(
    value: Any,
    source: Any,
    context: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Interpolate every string inside a JSON-like structure."""
    if isinstance(value, str):
        return replace_variables(value, source, context)
    if isinstance(value, dict):
        return {k: interpolate_value(v, source, context) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_value(v, source, context) for v in value]
    return value
