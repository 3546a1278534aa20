"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The store owns its async engine. A plain ``postgresql://``, ``mysql://`` or
``sqlite://`` URL is mapped to the matching async driver (asyncpg, aiomysql,
aiosqlite). Every method runs in its own transaction and driver failures
surface as ``PersistenceError``.

Sessions are written column by column on every save, except the debounce
buffer, which only the two pending-message methods touch. Session writes
lock the row first. The active session invariant is enforced by the unique
``active_key`` column, so two concurrent starts for the same (customer, chat)
cannot both succeed, and an ended session is never made active again.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from database.models import (
    Base, ChannelRow, ChatRow, CustomerRow, FlowRow, FlowSessionRow, FlowTriggerRow,
    MessageRow, OrganizationRow, PromptRow,
)
from database.store_base import BaseFlowStore
from flows.errors import PersistenceError
from models.flow import Flow, FlowSession, FlowTrigger, SessionStatus
from models.schemas import Channel, Chat, ChatMessage, Customer, Organization, Prompt

logger = structlog.get_logger()

# written only through append_pending_message / take_pending_messages
_BUFFER_COLUMNS = frozenset({"message_history", "debounce_timestamp"})

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def async_url(url: str) -> str:
    """``sqlite:///x.db`` → ``sqlite+aiosqlite:///x.db``; URLs naming a driver pass through."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_options(url: str, echo: bool) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {"echo": echo, "pool_size": 10, "max_overflow": 20,
            "pool_recycle": 1800, "pool_pre_ping": True}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, url: str = "sqlite:///./flows.db", echo: bool = False):
        self.url = async_url(url)
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, **_engine_options(self.url, self._echo))
            logger.info("database_engine_created", dialect=self._engine.dialect.name,
                        url=self.url.split("@")[-1])
        return self._engine

    async def init(self) -> None:
        """Create missing tables."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not initialize {self.engine.dialect.name} store: {e}") from e
        logger.info("database_initialized", dialect=self.engine.dialect.name,
                    tables=sorted(Base.metadata.tables))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("database_closed")

    def _maker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._sessionmaker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._maker()() as db:
            try:
                yield db
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(str(e)) from e
            except Exception:
                await db.rollback()
                raise

    @staticmethod
    async def _locked_session_row(db: AsyncSession, session_id: str) -> Optional[FlowSessionRow]:
        # FOR UPDATE is a no-op on SQLite, which serializes writers anyway
        stmt = select(FlowSessionRow).where(FlowSessionRow.id == session_id).with_for_update()
        return (await db.execute(stmt)).scalar_one_or_none()

    # ── Organizations & Channels ───────────────────────────

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        async with self._transaction() as db:
            row = await db.get(OrganizationRow, organization_id)
            if not row:
                return None
            return Organization(id=row.id, name=row.name, timezone=row.timezone)

    async def save_organization(self, organization: Organization) -> Organization:
        async with self._transaction() as db:
            await db.merge(OrganizationRow(**organization.model_dump()))
        return organization

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        async with self._transaction() as db:
            row = await db.get(ChannelRow, channel_id)
            if not row:
                return None
            return Channel(id=row.id, organization_id=row.organization_id,
                           type=row.type, name=row.name)

    async def save_channel(self, channel: Channel) -> Channel:
        async with self._transaction() as db:
            await db.merge(ChannelRow(**channel.model_dump()))
        return channel

    # ── Customer operations ────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._transaction() as db:
            row = await db.get(CustomerRow, customer_id)
            return self._row_to_customer(row) if row else None

    async def save_customer(self, customer: Customer) -> Customer:
        async with self._transaction() as db:
            await db.merge(CustomerRow(**customer.model_dump()))
        return customer

    async def update_customer(self, customer_id: str, **fields) -> Optional[Customer]:
        async with self._transaction() as db:
            row = await db.get(CustomerRow, customer_id)
            if not row:
                return None
            for k, v in self._filter_fields(Customer, fields).items():
                setattr(row, k, v)
            await db.flush()
            return self._row_to_customer(row)

    # ── Chat operations ────────────────────────────────────

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        async with self._transaction() as db:
            row = await db.get(ChatRow, chat_id)
            return self._row_to_chat(row) if row else None

    async def save_chat(self, chat: Chat) -> Chat:
        data = chat.model_dump()
        data["status"] = chat.status.value
        async with self._transaction() as db:
            await db.merge(ChatRow(**data))
        return chat

    async def update_chat(self, chat_id: str, **fields) -> Optional[Chat]:
        async with self._transaction() as db:
            row = await db.get(ChatRow, chat_id)
            if not row:
                return None
            for k, v in self._filter_fields(Chat, fields).items():
                setattr(row, k, v.value if hasattr(v, "value") else v)
            await db.flush()
            return self._row_to_chat(row)

    async def has_prior_contact(self, organization_id: str, customer_id: str,
                                exclude_chat_id: str = "") -> bool:
        async with self._transaction() as db:
            stmt = (
                select(ChatRow.id)
                .where(and_(
                    ChatRow.organization_id == organization_id,
                    ChatRow.customer_id == customer_id,
                    ChatRow.id != exclude_chat_id,
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Message operations ─────────────────────────────────

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        data = message.model_dump(mode="json", exclude={"metadata", "created_at"})
        async with self._transaction() as db:
            db.add(MessageRow(**data, metadata_=message.metadata, created_at=message.created_at))
        return message

    async def get_chat_messages(self, chat_id: str, limit: int = 50) -> list[ChatMessage]:
        async with self._transaction() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.chat_id == chat_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in reversed(result.scalars().all())]

    async def get_customer_messages(self, customer_id: str, channel_id: str,
                                    limit: int = 50) -> list[ChatMessage]:
        async with self._transaction() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.customer_id == customer_id,
                    MessageRow.channel_id == channel_id,
                ))
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in reversed(result.scalars().all())]

    # ── Prompt operations ──────────────────────────────────

    async def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        async with self._transaction() as db:
            row = await db.get(PromptRow, prompt_id)
            if not row:
                return None
            return Prompt(
                id=row.id, organization_id=row.organization_id,
                title=row.title, content=row.content, model=row.model or "",
                temperature=row.temperature, max_tokens=row.max_tokens,
                timezone=row.timezone or "", tools=row.tools or [],
                destinations=row.destinations or {},
            )

    async def save_prompt(self, prompt: Prompt) -> Prompt:
        async with self._transaction() as db:
            await db.merge(PromptRow(**prompt.model_dump()))
        return prompt

    # ── Flow & trigger operations ──────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with self._transaction() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def save_flow(self, flow: Flow) -> Flow:
        data = flow.model_dump(mode="json")
        async with self._transaction() as db:
            await db.merge(FlowRow(**data))
        return flow

    async def list_triggers(self, organization_id: str,
                            trigger_type: str = "first_contact") -> list[FlowTrigger]:
        async with self._transaction() as db:
            stmt = (
                select(FlowTriggerRow, FlowRow)
                .join(FlowRow, FlowRow.id == FlowTriggerRow.flow_id, isouter=True)
                .where(and_(
                    FlowTriggerRow.organization_id == organization_id,
                    FlowTriggerRow.type == trigger_type,
                ))
                .order_by(FlowTriggerRow.position, FlowTriggerRow.created_at)
            )
            result = await db.execute(stmt)
            return [
                FlowTrigger(
                    id=trigger.id, type=trigger.type, is_active=trigger.is_active,
                    flow_id=trigger.flow_id, conditions=trigger.conditions or {},
                    flow=self._row_to_flow(flow) if flow else None,
                )
                for trigger, flow in result.all()
            ]

    async def save_trigger(self, organization_id: str, trigger: FlowTrigger) -> FlowTrigger:
        async with self._transaction() as db:
            row = await db.get(FlowTriggerRow, trigger.id)
            conditions = trigger.conditions.model_dump(mode="json")
            if row:
                row.flow_id = trigger.flow_id
                row.type = trigger.type
                row.is_active = trigger.is_active
                row.conditions = conditions
            else:
                result = await db.execute(
                    select(FlowTriggerRow.id).where(FlowTriggerRow.organization_id == organization_id)
                )
                db.add(FlowTriggerRow(
                    id=trigger.id, organization_id=organization_id,
                    flow_id=trigger.flow_id, type=trigger.type,
                    is_active=trigger.is_active, conditions=conditions,
                    position=len(result.all()),
                ))
        return trigger

    # ── Flow session operations ────────────────────────────

    async def get_session(self, session_id: str) -> Optional[FlowSession]:
        async with self._transaction() as db:
            row = await db.get(FlowSessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def find_active_session(self, customer_id: str, chat_id: str) -> Optional[FlowSession]:
        async with self._transaction() as db:
            stmt = select(FlowSessionRow).where(
                FlowSessionRow.active_key == f"{customer_id}:{chat_id}"
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def find_active_sessions_for_chat(self, chat_id: str) -> list[FlowSession]:
        async with self._transaction() as db:
            stmt = select(FlowSessionRow).where(and_(
                FlowSessionRow.chat_id == chat_id,
                FlowSessionRow.status == SessionStatus.ACTIVE.value,
            ))
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars().all()]

    async def create_session_if_absent(self, session: FlowSession) -> tuple[FlowSession, bool]:
        async with self._transaction() as db:
            db.add(FlowSessionRow(**self._session_to_columns(session)))
            try:
                await db.flush()
                return session, True
            except IntegrityError:
                await db.rollback()
                logger.info("flow_session_create_lost_race",
                            chat_id=session.chat_id, customer_id=session.customer_id)
            stmt = select(FlowSessionRow).where(FlowSessionRow.active_key == session.active_key)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
        if row is None:
            # winner already ended between our insert and lookup; try again
            return await self.create_session_if_absent(session)
        return self._row_to_session(row), False

    async def save_session(self, session: FlowSession) -> FlowSession:
        session = session.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        async with self._transaction() as db:
            row = await self._locked_session_row(db, session.id)
            if row is None:
                db.add(FlowSessionRow(**self._session_to_columns(session)))
                return session
            session = self._keep_ended(SessionStatus(row.status), session)
            for k, v in self._session_to_columns(session).items():
                if k not in _BUFFER_COLUMNS:
                    setattr(row, k, v)
            session = session.model_copy(update={
                "message_history": list(row.message_history or []),
                "debounce_timestamp": _as_utc(row.debounce_timestamp),
            })
        return session

    async def append_pending_message(self, session_id: str, message: dict[str, Any],
                                     received_at: datetime) -> Optional[FlowSession]:
        async with self._transaction() as db:
            row = await self._locked_session_row(db, session_id)
            if row is None:
                return None
            # reassign so the JSON column is flagged dirty
            row.message_history = [*(row.message_history or []), dict(message)]
            row.debounce_timestamp = received_at
            await db.flush()
            return self._row_to_session(row)

    async def take_pending_messages(self, session_id: str) -> list[dict[str, Any]]:
        async with self._transaction() as db:
            row = await self._locked_session_row(db, session_id)
            if row is None:
                return []
            pending = list(row.message_history or [])
            row.message_history = []
            row.debounce_timestamp = None
        return pending

    async def find_timed_out_sessions(self, now: datetime, limit: int = 100) -> list[FlowSession]:
        async with self._transaction() as db:
            stmt = (
                select(FlowSessionRow)
                .where(and_(
                    FlowSessionRow.status == SessionStatus.ACTIVE.value,
                    FlowSessionRow.timeout_at.is_not(None),
                    FlowSessionRow.timeout_at <= now,
                ))
                .order_by(FlowSessionRow.timeout_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars().all()]

    async def find_sessions_with_pending_messages(self) -> list[FlowSession]:
        # JSON emptiness is not portable; filter in Python
        async with self._transaction() as db:
            stmt = select(FlowSessionRow).where(
                FlowSessionRow.status == SessionStatus.ACTIVE.value
            )
            result = await db.execute(stmt)
            return [
                self._row_to_session(r) for r in result.scalars().all()
                if r.message_history
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _session_to_columns(session: FlowSession) -> dict[str, Any]:
        data = session.model_dump(mode="python")
        data["status"] = session.status.value
        data["variables"] = session.model_dump(mode="json", include={"variables"})["variables"]
        data["message_history"] = session.model_dump(mode="json", include={"message_history"})["message_history"]
        data["active_key"] = session.active_key if session.is_active else None
        return data

    @staticmethod
    def _row_to_session(row: FlowSessionRow) -> FlowSession:
        return FlowSession(
            id=row.id, flow_id=row.flow_id, chat_id=row.chat_id,
            customer_id=row.customer_id, organization_id=row.organization_id,
            channel_id=row.channel_id, status=SessionStatus(row.status),
            current_node_id=row.current_node_id, input_type=row.input_type,
            selected_option=row.selected_option, variables=row.variables or [],
            message_history=row.message_history or [],
            debounce_timestamp=_as_utc(row.debounce_timestamp),
            timeout_at=_as_utc(row.timeout_at),
            last_interaction=_as_utc(row.last_interaction),
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow.model_validate({
            "id": row.id, "organization_id": row.organization_id, "name": row.name,
            "nodes": row.nodes or [], "edges": row.edges or [],
            "variables": row.variables or [], "debounce_time": row.debounce_time,
            "is_published": row.is_published, "is_active": row.is_active,
        })

    @staticmethod
    def _row_to_customer(row: CustomerRow) -> Customer:
        return Customer(
            id=row.id, organization_id=row.organization_id, name=row.name,
            email=row.email, phone=row.phone, custom_fields=row.custom_fields or {},
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _row_to_chat(row: ChatRow) -> Chat:
        return Chat(
            id=row.id, organization_id=row.organization_id,
            customer_id=row.customer_id, channel_id=row.channel_id,
            title=row.title or "", status=row.status, flow_session_id=row.flow_session_id,
            funnel_id=row.funnel_id, funnel_stage_id=row.funnel_stage_id,
            sale_value=row.sale_value, team_id=row.team_id,
            assigned_to=row.assigned_to, tags=row.tags or [],
            rating=row.rating, feedback=row.feedback or "",
            closed_at=_as_utc(row.closed_at), created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> ChatMessage:
        return ChatMessage(
            id=row.id, chat_id=row.chat_id, organization_id=row.organization_id,
            customer_id=row.customer_id, channel_id=row.channel_id,
            session_id=row.session_id, direction=row.direction,
            sender_type=row.sender_type, content=row.content,
            attachments=row.attachments or [], metadata=row.metadata_ or {},
            status=row.status, created_at=_as_utc(row.created_at),
        )
