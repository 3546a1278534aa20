"""
Graph walker — advances a session through its flow.

A walk starts at the session's current node and executes automatic nodes
until the next node is an input node (park and send its prompt) or no next
node exists (end the session). The current node itself is not re-executed:
it already ran when the session parked there.

The in-memory position only moves when the walk parks, so a walk aborted by
an exception leaves the persisted position where it was.
"""
from __future__ import annotations

from typing import Optional

import structlog

from database.store_base import BaseFlowStore
from flows.errors import FlowLoopError
from flows.executors import NodeExecutors, WalkContext
from flows.graph import get_next_node, get_timeout_node
from flows.sessions import absorb_input, end_session, park_session
from models.flow import FlowSession, InputNode
from models.schemas import InboundMessage

logger = structlog.get_logger()

DEFAULT_MAX_STEPS = 100


class FlowWalker:

    def __init__(self, store: BaseFlowStore, executors: NodeExecutors,
                 max_steps: int = DEFAULT_MAX_STEPS):
        self.store = store
        self.executors = executors
        self.max_steps = max_steps

    async def continue_flow(
        self,
        session: FlowSession,
        event: Optional[InboundMessage],
        ctx: WalkContext,
    ) -> FlowSession:
        """Feed one (merged) inbound message to a session and walk."""
        current = ctx.flow.node(session.current_node_id)
        if current is None:
            logger.warning("flow_current_node_missing", session_id=session.id,
                           node_id=session.current_node_id, flow_id=ctx.flow.id)
            return await end_session(self.store, session, reason="current_node_missing")

        if isinstance(current, InputNode):
            session = await absorb_input(self.store, session, current, event)

        return await self._walk(session, current, event, ctx)

    async def resume_after_timeout(self, session: FlowSession, ctx: WalkContext) -> FlowSession:
        """
        Follow the current node's ``timeout`` edge, if it has one.

        ``timeout_at`` stays set until the walk parks or ends, so a branch
        that fails is picked up again by the next timeout scan.
        """
        current = ctx.flow.node(session.current_node_id)
        if current is None:
            return await end_session(self.store, session, reason="current_node_missing")

        target = get_timeout_node(ctx.flow, current)
        if target is None:
            logger.info("flow_timeout_without_edge", session_id=session.id, node_id=current.id)
            return await self.store.save_session(session.model_copy(update={"timeout_at": None}))

        logger.info("flow_timeout_followed", session_id=session.id,
                    node_id=current.id, target=target.id)
        return await self._walk(session, current, None, ctx, first=target)

    async def _walk(self, session, current, event, ctx: WalkContext, first=None) -> FlowSession:
        node = current
        next_node = first if first is not None else get_next_node(
            ctx.flow, current, event, session, ctx.customer, ctx.chat,
        )
        steps = 0

        while next_node is not None:
            if isinstance(next_node, InputNode):
                session = await park_session(self.store, session, next_node)
                if not session.is_active:
                    return self._stopped(session, next_node)
                outcome = await self.executors.execute(next_node, session, ctx)
                return outcome.session

            steps += 1
            if steps > self.max_steps:
                raise FlowLoopError(
                    f"walk exceeded {self.max_steps} steps",
                    session_id=session.id, node_id=next_node.id,
                )

            outcome = await self.executors.execute(next_node, session, ctx)
            session = outcome.session
            node = next_node
            if not session.is_active:
                return self._stopped(session, node)

            if outcome.redirect_to is not None:
                next_node = ctx.flow.node(outcome.redirect_to)
                if next_node is None:
                    logger.warning("flow_redirect_target_missing", session_id=session.id,
                                   node_id=node.id, target=outcome.redirect_to)
            else:
                next_node = get_next_node(ctx.flow, node, event, session, ctx.customer, ctx.chat)

        return await end_session(self.store, session)

    @staticmethod
    def _stopped(session: FlowSession, node) -> FlowSession:
        # ended by someone else while this walk was running
        logger.info("flow_walk_stopped", session_id=session.id, node_id=node.id)
        return session
