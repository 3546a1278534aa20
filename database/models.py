"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - String primary keys — no database-specific sequences.
  - "One active session per (customer, chat)" is a unique nullable
    ``active_key`` column: set while the session is active, NULL afterwards.
    NULLs never collide under a unique constraint on all three dialects.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Organizations & Channels
# ──────────────────────────────────────────────────────────────

class OrganizationRow(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")


class ChannelRow(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    type: Mapped[str] = mapped_column(String(32), default="")
    name: Mapped[str] = mapped_column(String(256), default="")


# ──────────────────────────────────────────────────────────────
#  Customers & Chats
# ──────────────────────────────────────────────────────────────

class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    phone: Mapped[str] = mapped_column(String(64), default="")
    custom_fields: Mapped[Any] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_customers_org", "organization_id"),
    )


class ChatRow(Base):
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    customer_id: Mapped[str] = mapped_column(String(64), default="")
    channel_id: Mapped[str] = mapped_column(String(64), default="")
    title: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(32), default="in_progress")
    flow_session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    funnel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    funnel_stage_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sale_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tags: Mapped[Any] = mapped_column(JSON, default=list)

    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str] = mapped_column(Text, default="")
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_chats_customer_org", "customer_id", "organization_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    chat_id: Mapped[str] = mapped_column(String(64), ForeignKey("chats.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    customer_id: Mapped[str] = mapped_column(String(64), default="")
    channel_id: Mapped[str] = mapped_column(String(64), default="")
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), default="system")
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachments: Mapped[Any] = mapped_column(JSON, default=list)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_chat_ts", "chat_id", "created_at"),
        Index("ix_messages_customer_channel", "customer_id", "channel_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Prompts
# ──────────────────────────────────────────────────────────────

class PromptRow(Base):
    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    title: Mapped[str] = mapped_column(String(256), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    model: Mapped[str] = mapped_column(String(128), default="")
    temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="")
    tools: Mapped[Any] = mapped_column(JSON, default=list)
    destinations: Mapped[Any] = mapped_column(JSON, default=dict)


# ──────────────────────────────────────────────────────────────
#  Flows & Triggers
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    variables: Mapped[Any] = mapped_column(JSON, default=list)
    debounce_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class FlowTriggerRow(Base):
    __tablename__ = "flow_triggers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    flow_id: Mapped[str] = mapped_column(String(64), ForeignKey("flows.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="first_contact")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    conditions: Mapped[Any] = mapped_column(JSON, default=dict)
    position: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_triggers_org_type", "organization_id", "type"),
    )


# ──────────────────────────────────────────────────────────────
#  Flow Sessions
# ──────────────────────────────────────────────────────────────

class FlowSessionRow(Base):
    __tablename__ = "flow_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), default="")
    channel_id: Mapped[str] = mapped_column(String(64), default="")

    status: Mapped[str] = mapped_column(String(16), default="active")
    active_key: Mapped[Optional[str]] = mapped_column(String(160), unique=True, nullable=True)

    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    input_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    selected_option: Mapped[Any] = mapped_column(JSON, nullable=True)
    variables: Mapped[Any] = mapped_column(JSON, default=list)
    message_history: Mapped[Any] = mapped_column(JSON, default=list)

    debounce_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    timeout_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_interaction: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_flow_sessions_chat_status", "chat_id", "status"),
        Index("ix_flow_sessions_status_timeout", "status", "timeout_at"),
    )
