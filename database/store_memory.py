"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlFlowStore
  - Safe under asyncio (single event loop); session creation is guarded by a lock
  - All data lost on process restart

Records are stored as deep copies so callers never share mutable state
with the store.

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseFlowStore
from models.flow import Flow, FlowSession, FlowTrigger, SessionStatus
from models.schemas import Channel, Chat, ChatMessage, Customer, Organization, Prompt

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class InMemoryFlowStore(BaseFlowStore):
    """
    Full-featured in-memory store with the same interface as SqlFlowStore.
    """

    def __init__(self):
        self._organizations: dict[str, Organization] = {}
        self._channels: dict[str, Channel] = {}
        self._customers: dict[str, Customer] = {}
        self._chats: dict[str, Chat] = {}
        self._messages: dict[str, list[ChatMessage]] = defaultdict(list)   # chat_id → messages
        self._prompts: dict[str, Prompt] = {}
        self._flows: dict[str, Flow] = {}
        self._triggers: dict[str, list[FlowTrigger]] = defaultdict(list)   # org_id → triggers
        self._sessions: dict[str, FlowSession] = {}

        # Indexes
        self._active_index: dict[str, str] = {}          # "customer:chat" → session_id
        self._session_lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Organizations & Channels ──────────────────────────

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        org = self._organizations.get(organization_id)
        return org.model_copy(deep=True) if org else None

    async def save_organization(self, organization: Organization) -> Organization:
        self._organizations[organization.id] = organization.model_copy(deep=True)
        return organization

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        channel = self._channels.get(channel_id)
        return channel.model_copy(deep=True) if channel else None

    async def save_channel(self, channel: Channel) -> Channel:
        self._channels[channel.id] = channel.model_copy(deep=True)
        return channel

    # ── Customers ─────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def save_customer(self, customer: Customer) -> Customer:
        self._customers[customer.id] = customer.model_copy(deep=True)
        return customer

    async def update_customer(self, customer_id: str, **fields) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        if not customer:
            return None
        updated = customer.model_copy(update=self._filter_fields(Customer, fields), deep=True)
        self._customers[customer_id] = updated
        return updated.model_copy(deep=True)

    # ── Chats ─────────────────────────────────────────────

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        return chat.model_copy(deep=True) if chat else None

    async def save_chat(self, chat: Chat) -> Chat:
        self._chats[chat.id] = chat.model_copy(deep=True)
        return chat

    async def update_chat(self, chat_id: str, **fields) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        if not chat:
            return None
        updated = chat.model_copy(update=self._filter_fields(Chat, fields), deep=True)
        self._chats[chat_id] = updated
        return updated.model_copy(deep=True)

    async def has_prior_contact(self, organization_id: str, customer_id: str,
                                exclude_chat_id: str = "") -> bool:
        return any(
            c.customer_id == customer_id
            and c.organization_id == organization_id
            and c.id != exclude_chat_id
            for c in self._chats.values()
        )

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        self._messages[message.chat_id].append(message.model_copy(deep=True))
        return message

    async def get_chat_messages(self, chat_id: str, limit: int = 50) -> list[ChatMessage]:
        msgs = self._messages.get(chat_id, [])
        return [m.model_copy(deep=True) for m in msgs[-limit:]]

    async def get_customer_messages(self, customer_id: str, channel_id: str,
                                    limit: int = 50) -> list[ChatMessage]:
        msgs = [
            m for chat_msgs in self._messages.values() for m in chat_msgs
            if m.customer_id == customer_id and m.channel_id == channel_id
        ]
        msgs.sort(key=lambda m: _as_utc(m.created_at))
        return [m.model_copy(deep=True) for m in msgs[-limit:]]

    # ── Prompts ───────────────────────────────────────────

    async def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        prompt = self._prompts.get(prompt_id)
        return prompt.model_copy(deep=True) if prompt else None

    async def save_prompt(self, prompt: Prompt) -> Prompt:
        self._prompts[prompt.id] = prompt.model_copy(deep=True)
        return prompt

    # ── Flows & Triggers ──────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def save_flow(self, flow: Flow) -> Flow:
        self._flows[flow.id] = flow.model_copy(deep=True)
        return flow

    async def list_triggers(self, organization_id: str,
                            trigger_type: str = "first_contact") -> list[FlowTrigger]:
        result = []
        for trigger in self._triggers.get(organization_id, []):
            if trigger.type != trigger_type:
                continue
            flow = self._flows.get(trigger.flow_id)
            result.append(trigger.model_copy(
                update={"flow": flow.model_copy(deep=True) if flow else None}, deep=True,
            ))
        return result

    async def save_trigger(self, organization_id: str, trigger: FlowTrigger) -> FlowTrigger:
        stored = trigger.model_copy(update={"flow": None}, deep=True)
        triggers = self._triggers[organization_id]
        for i, existing in enumerate(triggers):
            if existing.id == trigger.id:
                triggers[i] = stored
                break
        else:
            triggers.append(stored)
        return trigger

    # ── Flow Sessions ─────────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def find_active_session(self, customer_id: str, chat_id: str) -> Optional[FlowSession]:
        sid = self._active_index.get(f"{customer_id}:{chat_id}")
        if not sid:
            return None
        return await self.get_session(sid)

    async def find_active_sessions_for_chat(self, chat_id: str) -> list[FlowSession]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.chat_id == chat_id and s.is_active
        ]

    async def create_session_if_absent(self, session: FlowSession) -> tuple[FlowSession, bool]:
        async with self._session_lock:
            existing_id = self._active_index.get(session.active_key)
            if existing_id and existing_id in self._sessions:
                return self._sessions[existing_id].model_copy(deep=True), False
            self._store_session(session)
            return session.model_copy(deep=True), True

    async def save_session(self, session: FlowSession) -> FlowSession:
        update: dict[str, Any] = {"updated_at": _utcnow()}
        stored = self._sessions.get(session.id)
        if stored is not None:
            session = self._keep_ended(stored.status, session)
            update["message_history"] = stored.message_history
            update["debounce_timestamp"] = stored.debounce_timestamp
        session = session.model_copy(update=update)
        self._store_session(session)
        return session.model_copy(deep=True)

    async def append_pending_message(self, session_id: str, message: dict[str, Any],
                                     received_at: datetime) -> Optional[FlowSession]:
        stored = self._sessions.get(session_id)
        if stored is None:
            return None
        stored.message_history = [*stored.message_history, dict(message)]
        stored.debounce_timestamp = received_at
        return stored.model_copy(deep=True)

    async def take_pending_messages(self, session_id: str) -> list[dict[str, Any]]:
        stored = self._sessions.get(session_id)
        if stored is None:
            return []
        pending = stored.message_history
        stored.message_history = []
        stored.debounce_timestamp = None
        return pending

    async def find_timed_out_sessions(self, now: datetime, limit: int = 100) -> list[FlowSession]:
        now = _as_utc(now)
        due = [
            s for s in self._sessions.values()
            if s.is_active and s.timeout_at is not None and _as_utc(s.timeout_at) <= now
        ]
        due.sort(key=lambda s: _as_utc(s.timeout_at))
        return [s.model_copy(deep=True) for s in due[:limit]]

    async def find_sessions_with_pending_messages(self) -> list[FlowSession]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.is_active and s.message_history
        ]

    def _store_session(self, session: FlowSession) -> None:
        self._sessions[session.id] = session.model_copy(deep=True)
        key = session.active_key
        if session.status == SessionStatus.ACTIVE:
            self._active_index[key] = session.id
        elif self._active_index.get(key) == session.id:
            del self._active_index[key]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "flows": len(self._flows),
            "sessions": len(self._sessions),
            "active_sessions": len(self._active_index),
            "chats": len(self._chats),
            "messages": sum(len(v) for v in self._messages.values()),
        }
