"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)
  - FileFlowStore     (JSON files on disk, single-process, durable)

Every session mutation is a read-modify-persist scoped to one session id.
Backends raise PersistenceError when the underlying storage fails.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.flow import Flow, FlowSession, FlowTrigger, SessionStatus
from models.schemas import Channel, Chat, ChatMessage, Customer, Organization, Prompt

logger = structlog.get_logger()


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    async def init(self) -> None:
        """Prepare the backing storage. Called once at startup."""

    async def close(self) -> None:
        """Release connections and flush pending writes. Called at shutdown."""

    # ── Organizations & Channels ──────────────────────────────

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    @abstractmethod
    async def save_organization(self, organization: Organization) -> Organization:
        ...

    @abstractmethod
    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        ...

    @abstractmethod
    async def save_channel(self, channel: Channel) -> Channel:
        ...

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def save_customer(self, customer: Customer) -> Customer:
        ...

    @abstractmethod
    async def update_customer(self, customer_id: str, **fields) -> Optional[Customer]:
        ...

    # ── Chats ─────────────────────────────────────────────────

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def save_chat(self, chat: Chat) -> Chat:
        ...

    @abstractmethod
    async def update_chat(self, chat_id: str, **fields) -> Optional[Chat]:
        ...

    @abstractmethod
    async def has_prior_contact(self, organization_id: str, customer_id: str,
                                exclude_chat_id: str = "") -> bool:
        """True when the customer has another chat in the organization."""

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: ChatMessage) -> ChatMessage:
        ...

    @abstractmethod
    async def get_chat_messages(self, chat_id: str, limit: int = 50) -> list[ChatMessage]:
        """Messages of one chat, oldest first."""

    @abstractmethod
    async def get_customer_messages(self, customer_id: str, channel_id: str,
                                    limit: int = 50) -> list[ChatMessage]:
        """Messages of one customer on one channel across chats, oldest first."""

    # ── Prompts ───────────────────────────────────────────────

    @abstractmethod
    async def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        ...

    @abstractmethod
    async def save_prompt(self, prompt: Prompt) -> Prompt:
        ...

    # ── Flows & Triggers ──────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def list_triggers(self, organization_id: str,
                            trigger_type: str = "first_contact") -> list[FlowTrigger]:
        """Triggers of an organization in listed order, each with its flow attached."""

    @abstractmethod
    async def save_trigger(self, organization_id: str, trigger: FlowTrigger) -> FlowTrigger:
        ...

    # ── Flow Sessions ─────────────────────────────────────────

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def find_active_session(self, customer_id: str, chat_id: str) -> Optional[FlowSession]:
        ...

    @abstractmethod
    async def find_active_sessions_for_chat(self, chat_id: str) -> list[FlowSession]:
        ...

    @abstractmethod
    async def create_session_if_absent(self, session: FlowSession) -> tuple[FlowSession, bool]:
        """
        Insert ``session`` unless an active session already exists for the same
        (customer, chat). Returns (session, created); a lost race returns the
        existing session with created=False.
        """

    @abstractmethod
    async def save_session(self, session: FlowSession) -> FlowSession:
        """
        Persist the session state; returns it with ``updated_at`` touched.
        A session stored as inactive stays inactive: saving an active copy of
        it keeps the stored status (see ``_keep_ended``).
        The debounce buffer (``message_history``, ``debounce_timestamp``) is
        not written here; it changes only through the two methods below.
        """

    @abstractmethod
    async def append_pending_message(self, session_id: str, message: dict[str, Any],
                                     received_at: datetime) -> Optional[FlowSession]:
        """Add an inbound message to the session's debounce buffer."""

    @abstractmethod
    async def take_pending_messages(self, session_id: str) -> list[dict[str, Any]]:
        """Return and clear the session's debounce buffer."""

    @abstractmethod
    async def find_timed_out_sessions(self, now: datetime, limit: int = 100) -> list[FlowSession]:
        """Active sessions whose ``timeout_at`` is at or before ``now``."""

    @abstractmethod
    async def find_sessions_with_pending_messages(self) -> list[FlowSession]:
        """Active sessions holding a non-empty debounce buffer."""

    # ── Helpers shared by backends ────────────────────────────

    @staticmethod
    def _keep_ended(stored_status: Optional[SessionStatus], session: FlowSession) -> FlowSession:
        if stored_status == SessionStatus.INACTIVE and session.is_active:
            logger.warning("flow_session_reactivation_refused", session_id=session.id,
                           node_id=session.current_node_id)
            return session.model_copy(update={"status": SessionStatus.INACTIVE, "timeout_at": None})
        return session

    @staticmethod
    def _filter_fields(model_cls, fields: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in fields.items() if k in model_cls.model_fields}
