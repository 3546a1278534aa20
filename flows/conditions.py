"""
Condition evaluation for condition nodes.

Operands come from the session variables (``type: variable``) or from the
customer/chat records (``type: clientData``). A variable or field that does
not exist makes its sub-condition false; operators live in utils/conditions.py.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog

from flows.interpolation import replace_variables
from models.flow import Condition, FlowSession, SubCondition
from models.schemas import Chat, Customer
from models.variables import MISSING, get_variable
from utils.conditions import apply_operator, combine

logger = structlog.get_logger()

CUSTOMER_PREFIXES = ("customer_", "custumer_")
FUNNEL_STAGE_FIELDS = {"chat_funil", "chat_funnel_stage"}

_CHAT_FIELDS = {
    "chat_funil": "funnel_stage_id",
    "chat_funnel_stage": "funnel_stage_id",
    "chat_funnel": "funnel_id",
    "chat_price": "sale_value",
    "chat_team": "team_id",
    "chat_attendant": "assigned_to",
    "chat_tag": "tags",
    "chat_tags": "tags",
    "chat_status": "status",
}


def client_data_value(field: str, customer: Optional[Customer], chat: Optional[Chat]) -> Any:
    """Resolve a client-data field name to its value, or MISSING."""
    for prefix in CUSTOMER_PREFIXES:
        if field.startswith(prefix):
            if customer is None:
                return MISSING
            attr = field[len(prefix):]
            if attr in Customer.model_fields and attr != "custom_fields":
                return getattr(customer, attr)
            return customer.custom_fields.get(attr, MISSING)

    attr = _CHAT_FIELDS.get(field)
    if attr is None or chat is None:
        return MISSING
    value = getattr(chat, attr)
    return value.value if hasattr(value, "value") else value


def operand_value(
    sub: SubCondition,
    session: FlowSession,
    customer: Optional[Customer] = None,
    chat: Optional[Chat] = None,
) -> Any:
    if sub.type == "clientData":
        return client_data_value(sub.field, customer, chat)
    return get_variable(session.variables, sub.field)


def evaluate_sub_condition(
    sub: SubCondition,
    session: FlowSession,
    customer: Optional[Customer] = None,
    chat: Optional[Chat] = None,
) -> bool:
    field_value = operand_value(sub, session, customer, chat)
    if field_value is MISSING:
        return False

    compare = sub.value
    if (sub.type == "clientData" and sub.field in FUNNEL_STAGE_FIELDS
            and sub.stage_ids and sub.operator in ("inList", "notInList")):
        compare = sub.stage_ids
    elif isinstance(compare, str):
        context = {"customer": customer, "chat": chat} if customer or chat else None
        compare = replace_variables(compare, session, context)

    return apply_operator(sub.operator, field_value, compare)


def evaluate_condition(
    condition: Condition,
    session: FlowSession,
    customer: Optional[Customer] = None,
    chat: Optional[Chat] = None,
) -> bool:
    """AND/OR over the sub-conditions. An empty condition never matches."""
    if not condition.sub_conditions:
        return False
    results = [
        evaluate_sub_condition(sub, session, customer, chat)
        for sub in condition.sub_conditions
    ]
    return combine(condition.logic_operator, results)
