"""
Flow Engine — session lifecycle for the conversation flow interpreter.

Architecture:
  Inbound:  ConversationContext + InboundMessage
            → explicit flow: end the chat's active sessions, start it
            → active session for (customer, chat): resume it
            → no session: trigger resolver picks a flow, start it
            → Debouncer buffers the message and (re)arms the timer
            → timer fires → FlowWalker walks from the current node

  Timeout:  TimeoutScanner finds parked sessions past ``timeout_at``
            → handle_session_timeout → follow the ``timeout`` edge

The engine keeps no conversation state of its own. Everything a walk needs
is reloaded from the store, so any process can pick up any session.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError

from channels.sender import MessageSender
from config.settings import Settings, get_settings
from database.store_base import BaseFlowStore
from flows.debounce import Debouncer
from flows.errors import FlowDefinitionError, SessionNotFoundError
from flows.executors import NodeExecutors, Sleep, WalkContext
from flows.llm import LLMClient, ProviderLLMClient
from flows.sessions import end_session, new_session
from flows.triggers import check_triggers
from flows.walker import FlowWalker
from models.flow import Flow, FlowSession
from models.schemas import ConversationContext, InboundMessage

logger = structlog.get_logger()


class FlowEngine:
    """
    Entry point for inbound messages, operator-started flows and timeouts.

    Direct calls (``continue_flow``, ``handle_session_timeout``) propagate
    errors to the caller. Walks fired by the debounce timer report their
    errors and swallow them, since nobody is waiting on the timer.
    """

    def __init__(
        self,
        store: BaseFlowStore,
        sender: MessageSender,
        http_client: Optional[httpx.AsyncClient] = None,
        llm_client: Optional[LLMClient] = None,
        settings: Settings = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.sender = sender
        cfg = self.settings.flow

        self.executors = NodeExecutors(
            store, sender,
            http_client=http_client,
            llm_client=llm_client if llm_client is not None else ProviderLLMClient(self.settings.llm),
            sleep=sleep,
            flow_config=cfg,
            http_config=self.settings.http,
        )
        self.walker = FlowWalker(store, self.executors, max_steps=cfg.max_steps)
        self.debouncer = Debouncer(
            store, self._walk_locked,
            merge_mode=cfg.debounce_merge,
            default_ms=cfg.debounce_ms,
        )

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def process_message(
        self,
        ctx: ConversationContext,
        event: InboundMessage,
        flow: Optional[Flow] = None,
    ) -> Optional[FlowSession]:
        """
        Route one inbound message to a session and buffer it for the walk.

        Returns the session the message was buffered on, or None when no
        flow applies. The walk itself runs when the debounce timer fires.
        """
        if flow is not None:
            for active in await self.store.find_active_sessions_for_chat(ctx.chat.id):
                await self.pause_flow(active, reason="replaced")
            session = await self.start_flow(ctx, flow)
        else:
            session = await self.get_active_session(ctx)
            if session is None:
                flow = await check_triggers(self.store, ctx)
                if flow is None:
                    return None
                session = await self.start_flow(ctx, flow)
            else:
                flow = await self._load_flow(session.flow_id)
                if flow is None:
                    logger.warning("flow_missing_for_session", session_id=session.id,
                                   flow_id=session.flow_id)
                    await self.pause_flow(session, reason="flow_missing")
                    return None

        if session is None:
            return None
        return await self.debouncer.submit(session, event, flow.debounce_time or None)

    async def start_flow(self, ctx: ConversationContext, flow: Flow) -> Optional[FlowSession]:
        """Create the session at the flow's entry node and point the chat at it."""
        entry = flow.entry_node()
        if entry is None:
            logger.warning("flow_entry_node_missing", flow_id=flow.id, chat_id=ctx.chat.id)
            return None

        session, created = await self.store.create_session_if_absent(
            new_session(flow, ctx, entry.id)
        )
        if not created:
            logger.info("flow_session_already_active", session_id=session.id,
                        chat_id=ctx.chat.id, flow_id=session.flow_id)
            return session

        await self.store.update_chat(ctx.chat.id, flow_session_id=session.id)
        logger.info("flow_session_started", session_id=session.id, flow_id=flow.id,
                    chat_id=ctx.chat.id, customer_id=ctx.customer.id, node_id=entry.id)
        return session

    async def get_active_session(self, ctx: ConversationContext) -> Optional[FlowSession]:
        return await self.store.find_active_session(ctx.customer.id, ctx.chat.id)

    # ══════════════════════════════════════════════════════════
    #  WALKS
    # ══════════════════════════════════════════════════════════

    async def continue_flow(self, session: FlowSession,
                            event: Optional[InboundMessage]) -> FlowSession:
        """Walk ``session`` with ``event`` now, bypassing the debounce timer."""
        async with self.debouncer.session_lock(session.id):
            return await self._walk_locked(session, event)

    async def _walk_locked(self, session: FlowSession,
                           event: Optional[InboundMessage]) -> FlowSession:
        ctx = await self._walk_context(session)
        return await self.walker.continue_flow(session, event, ctx)

    async def handle_session_timeout(self, session: FlowSession) -> Optional[FlowSession]:
        """Follow the timeout edge of a parked session whose ``timeout_at`` passed."""
        async with self.debouncer.session_lock(session.id):
            fresh = await self.store.get_session(session.id)
            if fresh is None:
                raise SessionNotFoundError("timed-out session not found", session_id=session.id)
            # resumed or ended since the scan
            if not fresh.is_active or not fresh.is_timed_out:
                logger.debug("flow_timeout_skipped", session_id=fresh.id,
                             status=fresh.status.value)
                return fresh
            ctx = await self._walk_context(fresh)
            logger.info("flow_session_timed_out", session_id=fresh.id,
                        node_id=fresh.current_node_id)
            return await self.walker.resume_after_timeout(fresh, ctx)

    async def pause_flow(self, session: FlowSession, reason: str = "paused") -> FlowSession:
        """End the session and release its chat once any walk on it has finished."""
        self.debouncer.cancel(session.chat_id, session.id)
        async with self.debouncer.session_lock(session.id):
            fresh = await self.store.get_session(session.id) or session
            if not fresh.is_active:
                return fresh
            return await end_session(self.store, fresh, reason=reason)

    async def recover_pending(self) -> int:
        """Re-arm debounce timers for buffers left over from a previous process."""
        return await self.debouncer.recover_pending()

    # ── Loading ───────────────────────────────────────────────

    async def _load_flow(self, flow_id: str) -> Optional[Flow]:
        try:
            return await self.store.get_flow(flow_id)
        except ValidationError as e:
            raise FlowDefinitionError(f"flow {flow_id} is invalid: {e}", flow_id=flow_id) from e

    async def _walk_context(self, session: FlowSession) -> WalkContext:
        flow = await self._load_flow(session.flow_id)
        if flow is None:
            raise FlowDefinitionError(f"flow {session.flow_id} not found", flow_id=session.flow_id)
        customer = await self.store.get_customer(session.customer_id)
        chat = await self.store.get_chat(session.chat_id)
        return WalkContext(flow=flow, customer=customer, chat=chat)

    async def close(self) -> None:
        await self.debouncer.close()
        await self.sender.close()
