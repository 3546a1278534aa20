"""
Flow session state transitions.

Every function here is a read-modify-persist through the store for one
session and returns the persisted session.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from database.store_base import BaseFlowStore
from flows.graph import match_option
from models.flow import Flow, FlowSession, InputNode, SessionStatus
from models.schemas import Chat, ChatStatus, ConversationContext, InboundMessage
from models.variables import normalize_variables, set_variable

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session(flow: Flow, ctx: ConversationContext, entry_node_id: str) -> FlowSession:
    now = utcnow()
    return FlowSession(
        flow_id=flow.id,
        chat_id=ctx.chat.id,
        customer_id=ctx.customer.id,
        organization_id=ctx.organization.id,
        channel_id=ctx.channel.id,
        status=SessionStatus.ACTIVE,
        current_node_id=entry_node_id,
        variables=normalize_variables(
            {name: v.value for name, v in flow.variables.items()}
        ),
        last_interaction=now,
        created_at=now,
        updated_at=now,
    )


async def absorb_input(
    store: BaseFlowStore,
    session: FlowSession,
    node: InputNode,
    event: Optional[InboundMessage],
) -> FlowSession:
    """Record the customer's answer to the input node the session is parked at."""
    updates: dict = {"timeout_at": None, "last_interaction": utcnow()}
    content = event.content if event else ""

    if node.is_options:
        index = match_option(node, content)
        if index is not None:
            option = node.data.options[index]
            updates["selected_option"] = {"index": index, **option.model_dump(exclude_none=True)}

    variable_name = node.data.input_config.variable_name
    if event is not None and variable_name:
        updates["variables"] = set_variable(session.variables, variable_name, content)

    return await store.save_session(session.model_copy(update=updates))


async def park_session(store: BaseFlowStore, session: FlowSession, node: InputNode) -> FlowSession:
    """Stop at an input node and wait for the customer."""
    now = utcnow()
    minutes = node.data.input_config.timeout
    timeout_at = now + timedelta(minutes=minutes) if minutes and minutes > 0 else None
    parked = await store.save_session(session.model_copy(update={
        "current_node_id": node.id,
        "input_type": node.data.input_type or "text",
        "timeout_at": timeout_at,
        "last_interaction": now,
    }))
    logger.info("flow_session_parked", session_id=session.id, node_id=node.id,
                timeout_at=timeout_at.isoformat() if timeout_at else None)
    return parked


async def release_chat(store: BaseFlowStore, session: FlowSession) -> Optional[Chat]:
    """Clear the chat's session pointer; close a chat that was waiting to close."""
    chat = await store.get_chat(session.chat_id)
    if chat is None:
        return None
    fields: dict = {}
    if chat.flow_session_id == session.id:
        fields["flow_session_id"] = None
    if chat.status == ChatStatus.AWAIT_CLOSING:
        fields["status"] = ChatStatus.CLOSED
        fields["closed_at"] = utcnow()
    if not fields:
        return chat
    return await store.update_chat(chat.id, **fields)


async def end_session(store: BaseFlowStore, session: FlowSession, reason: str = "completed") -> FlowSession:
    ended = await store.save_session(session.model_copy(update={
        "status": SessionStatus.INACTIVE,
        "timeout_at": None,
    }))
    await release_chat(store, ended)
    logger.info("flow_session_ended", session_id=session.id, flow_id=session.flow_id,
                node_id=session.current_node_id, reason=reason)
    return ended


async def hand_over(store: BaseFlowStore, session: FlowSession, flow: Flow,
                    entry_node_id: str) -> tuple[FlowSession, FlowSession]:
    """
    End ``session`` and open a session of ``flow`` on the same chat.

    The new session waits at its entry node and walks on the next inbound
    message. Returns the ended session and its successor.
    """
    ended = await end_session(store, session, reason="handover")
    now = utcnow()
    successor, created = await store.create_session_if_absent(FlowSession(
        flow_id=flow.id,
        chat_id=session.chat_id,
        customer_id=session.customer_id,
        organization_id=session.organization_id,
        channel_id=session.channel_id,
        current_node_id=entry_node_id,
        variables=normalize_variables({name: v.value for name, v in flow.variables.items()}),
        last_interaction=now,
        created_at=now,
        updated_at=now,
    ))
    if created:
        await store.update_chat(session.chat_id, flow_session_id=successor.id)
    logger.info("flow_session_handed_over", session_id=session.id, flow_id=flow.id,
                successor_id=successor.id, created=created)
    return ended, successor
