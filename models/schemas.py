"""
Core data models shared by the flow interpreter.

These are read-only projections of the platform records the interpreter
touches (organization, channel, customer, chat) plus the message types that
cross its boundaries. Persistence schemas beyond these fields belong to the
platform, not to this package.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChatStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAIT_CLOSING = "await_closing"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class AttachmentType(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"


# ──────────────────────────────────────────────────────────────
#  Tenancy
# ──────────────────────────────────────────────────────────────

class Organization(BaseModel):
    id: str
    name: str = ""
    timezone: str = "UTC"


class Channel(BaseModel):
    """A connected messaging channel (WhatsApp number, Instagram page, …)."""
    id: str
    organization_id: str = ""
    type: str = ""                            # whatsapp | instagram | facebook | email | …
    name: str = ""


# ──────────────────────────────────────────────────────────────
#  Customer & Chat
# ──────────────────────────────────────────────────────────────

class Customer(BaseModel):
    id: str
    organization_id: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""
    custom_fields: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)


class Chat(BaseModel):
    """
    A conversation thread between one customer and the organization on one
    channel. Holds a back-reference to the active flow session, if any.
    """
    id: str
    organization_id: str = ""
    customer_id: str = ""
    channel_id: str = ""
    title: str = ""
    status: ChatStatus = ChatStatus.IN_PROGRESS
    flow_session_id: Optional[str] = None
    funnel_id: Optional[str] = None
    funnel_stage_id: Optional[str] = None
    sale_value: Optional[float] = None
    team_id: Optional[str] = None
    assigned_to: Optional[str] = None
    tags: list[str] = []
    rating: Optional[int] = None
    feedback: str = ""
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


class ActionFilter(BaseModel):
    variable: str = ""
    operator: str = ""                        # equals | not_equals | contains | exists | …
    value: Any = None


class PromptAction(BaseModel):
    """Side effect run when the agent calls the tool it is attached to."""
    type: str                                 # update_customer | update_chat | start_flow
    name: str = ""
    config: dict[str, Any] = {}               # direct values or {variable, mapping} lookups
    filters: list[ActionFilter] = []
    send_message: bool = False


class Prompt(BaseModel):
    """
    Stored system prompt for agent nodes, with the model settings, the tool
    catalog and the actions each tool triggers.
    """
    id: str
    organization_id: str = ""
    title: str = ""
    content: str = ""
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timezone: str = ""
    tools: list[dict[str, Any]] = []
    destinations: dict[str, list[PromptAction]] = {}


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    """Canonical inbound event produced by the ingestion layer."""
    content: str = ""
    type: str = "text"
    metadata: dict[str, Any] = {}


class Attachment(BaseModel):
    url: str
    type: AttachmentType
    content: str = ""                         # caption / link label


class ChatMessage(BaseModel):
    """A message row in a chat log, inbound or outbound."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    chat_id: str
    organization_id: str = ""
    customer_id: str = ""
    channel_id: str = ""
    session_id: Optional[str] = None
    direction: MessageDirection = MessageDirection.OUTBOUND
    sender_type: SenderType = SenderType.SYSTEM
    content: Optional[str] = None
    attachments: list[Attachment] = []
    metadata: dict[str, Any] = {}
    status: str = "pending"                   # pending → picked up by the dispatcher
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Execution context: what the ingestion layer resolved
# ──────────────────────────────────────────────────────────────

class ConversationContext(BaseModel):
    """Records resolved for one inbound event."""
    organization: Organization
    channel: Channel
    customer: Customer
    chat: Chat
    is_first_contact: Optional[bool] = None   # None → ask the store
