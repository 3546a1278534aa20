"""
Node executors — one handler per node kind.

Each handler receives the node, the current session and the walk context and
returns a NodeOutcome. Variable changes are persisted before the handler
returns, and the returned session carries them so later nodes of the same
walk see them. ``redirect_to`` asks the walker to jump to a node id instead
of following edges.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from channels.sender import MessageSender
from config.settings import FlowConfig, HttpConfig, get_settings
from database.store_base import BaseFlowStore
from flows.agent import execute_agent
from flows.errors import NodeConfigurationError
from flows.http import execute_http_request
from flows.interpolation import replace_variables
from flows.llm import LLMClient, execute_llm
from flows.sessions import hand_over
from flows.text import Pacing, build_text_plan
from models.flow import (
    NODE_CLASSES, AgentNode, ConditionNode, DelayNode, Flow, FlowSession, HttpRequestNode,
    InputNode, JumpNode, LLMNode, MediaNode, StartNode, TextNode,
    UpdateCustomerNode, VariableNode,
)
from models.schemas import Chat, Customer
from models.variables import set_variable, set_variables

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class NodeOutcome:
    session: FlowSession
    redirect_to: Optional[str] = None


@dataclass
class WalkContext:
    """Records a walk reads and writes besides the session."""
    flow: Flow
    customer: Optional[Customer] = None
    chat: Optional[Chat] = None

    @property
    def template_context(self) -> dict[str, Any]:
        return {k: v for k, v in (("customer", self.customer), ("chat", self.chat)) if v is not None}


class NodeExecutors:
    """Dispatches a node to its handler."""

    def __init__(
        self,
        store: BaseFlowStore,
        sender: MessageSender,
        http_client: Optional[httpx.AsyncClient] = None,
        llm_client: Optional[LLMClient] = None,
        sleep: Sleep = asyncio.sleep,
        flow_config: FlowConfig = None,
        http_config: HttpConfig = None,
    ):
        settings = get_settings()
        self.store = store
        self.sender = sender
        self.http_client = http_client
        self.llm_client = llm_client
        self.sleep = sleep
        self.flow_config = flow_config or settings.flow
        self.http_config = http_config or settings.http
        self.pacing = Pacing(
            paragraph=self.flow_config.paragraph_delay_s,
            link=self.flow_config.link_delay_s,
            media=self.flow_config.media_delay_s,
        )

        self._handlers: dict[type, Callable[..., Awaitable[NodeOutcome]]] = {
            StartNode: self._start,
            TextNode: self._text,
            MediaNode: self._media,
            InputNode: self._input,
            ConditionNode: self._condition,
            VariableNode: self._variable,
            DelayNode: self._delay,
            UpdateCustomerNode: self._update_customer,
            HttpRequestNode: self._http_request,
            LLMNode: self._llm,
            AgentNode: self._agent,
            JumpNode: self._jump,
        }
        missing = [cls.__name__ for cls in NODE_CLASSES if cls not in self._handlers]
        if missing:
            raise TypeError(f"no executor registered for node kinds: {', '.join(missing)}")

    async def execute(self, node, session: FlowSession, ctx: WalkContext) -> NodeOutcome:
        handler = self._handlers[type(node)]
        logger.debug("flow_node_executing", session_id=session.id, node_id=node.id, node_type=node.type)
        return await handler(node, session, ctx)

    async def _save_variables(self, session: FlowSession, values: dict[str, Any]) -> FlowSession:
        if not values:
            return session
        updated = session.model_copy(update={"variables": set_variables(session.variables, values)})
        return await self.store.save_session(updated)

    # ── Handlers ──────────────────────────────────────────────

    async def _start(self, node: StartNode, session, ctx) -> NodeOutcome:
        return NodeOutcome(session)

    async def _condition(self, node: ConditionNode, session, ctx) -> NodeOutcome:
        # branching happens in edge resolution
        return NodeOutcome(session)

    async def _text(self, node: TextNode, session, ctx) -> NodeOutcome:
        text = replace_variables(node.data.text, session, ctx.template_context)
        if not text:
            return NodeOutcome(session)
        for part in build_text_plan(text, node.data, self.pacing):
            await self.sender.send(session, content=part.content,
                                   attachments=part.attachments or None, metadata=part.metadata)
            if part.delay_after > 0:
                await self.sleep(part.delay_after)
        return NodeOutcome(session)

    async def _media(self, node: MediaNode, session, ctx) -> NodeOutcome:
        url = replace_variables(node.data.media_url, session, ctx.template_context)
        if not url:
            raise NodeConfigurationError(f"{node.type} node has no media url",
                                         session_id=session.id, node_id=node.id)
        attachment = {"url": url, "type": node.type}
        if node.data.caption:
            attachment["content"] = replace_variables(node.data.caption, session, ctx.template_context)
        await self.sender.send(session, attachments=[attachment])
        return NodeOutcome(session)

    async def _input(self, node: InputNode, session, ctx) -> NodeOutcome:
        prompt = replace_variables(node.data.text, session, ctx.template_context)
        if prompt:
            metadata = None
            if node.is_options and node.data.options:
                metadata = {"options": [o.model_dump(exclude_none=True) for o in node.data.options]}
            await self.sender.send(session, content=prompt, metadata=metadata)
        return NodeOutcome(session)

    async def _variable(self, node: VariableNode, session, ctx) -> NodeOutcome:
        assignment = node.data.variable
        if assignment is None or not assignment.name:
            raise NodeConfigurationError("variable node has no variable name",
                                         session_id=session.id, node_id=node.id)
        value = replace_variables(assignment.value, session, ctx.template_context)
        updated = session.model_copy(update={
            "variables": set_variable(session.variables, assignment.name, value),
        })
        return NodeOutcome(await self.store.save_session(updated))

    async def _delay(self, node: DelayNode, session, ctx) -> NodeOutcome:
        if node.data.delay_seconds > 0:
            await self.sleep(node.data.delay_seconds)
        return NodeOutcome(session)

    async def _update_customer(self, node: UpdateCustomerNode, session, ctx) -> NodeOutcome:
        data = node.data
        tpl = ctx.template_context

        def render(value):
            return replace_variables(value, session, tpl)

        if data.action == "customer_field":
            updates = [(data.field, data.value)] if data.field else []
            updates += [(f.name, f.value) for f in data.fields if f.name]
            if not updates:
                raise NodeConfigurationError("customer_field update has no field",
                                             session_id=session.id, node_id=node.id)
            customer = ctx.customer or await self.store.get_customer(session.customer_id)
            if customer is None:
                logger.warning("flow_customer_missing", session_id=session.id,
                               customer_id=session.customer_id)
                return NodeOutcome(session)
            fields: dict[str, Any] = {}
            custom = dict(customer.custom_fields)
            for name, raw in updates:
                value = render(raw)
                if name in ("name", "email", "phone"):
                    fields[name] = "" if value is None else str(value)
                else:
                    custom[name] = value
            if custom != customer.custom_fields:
                fields["custom_fields"] = custom
            ctx.customer = await self.store.update_customer(customer.id, **fields)
            return NodeOutcome(session)

        if data.action == "rating":
            try:
                fields = {"rating": int(float(str(render(data.value))))}
            except (TypeError, ValueError):
                raise NodeConfigurationError(f"rating is not a number: {data.value!r}",
                                             session_id=session.id, node_id=node.id)
        elif data.action == "feedback":
            fields = {"feedback": "" if data.value is None else str(render(data.value))}
        elif data.action == "funnel":
            fields = {"funnel_id": render(data.funnel_id), "funnel_stage_id": render(data.stage_id)}
        elif data.action == "team":
            fields = {"team_id": render(data.team_id)}
        else:  # agent
            fields = {"assigned_to": render(data.agent_id)}

        chat = await self.store.update_chat(session.chat_id, **fields)
        if chat is None:
            logger.warning("flow_chat_missing", session_id=session.id, chat_id=session.chat_id)
        else:
            ctx.chat = chat
        logger.info("flow_chat_updated", session_id=session.id, node_id=node.id,
                    action=data.action)
        return NodeOutcome(session)

    async def _http_request(self, node: HttpRequestNode, session, ctx) -> NodeOutcome:
        client = self.http_client
        owns_client = client is None
        if owns_client:
            client = httpx.AsyncClient(headers={"User-Agent": self.http_config.user_agent})
        try:
            values = await execute_http_request(
                node.data, session, client, node_id=node.id,
                default_timeout=self.http_config.timeout_s,
                context=ctx.template_context,
            )
        finally:
            if owns_client:
                await client.aclose()
        return NodeOutcome(await self._save_variables(session, values))

    async def _llm(self, node: LLMNode, session, ctx) -> NodeOutcome:
        if self.llm_client is None:
            raise NodeConfigurationError("no language-model client configured",
                                         session_id=session.id, node_id=node.id)
        outcome = await execute_llm(node.data.openai, session, self.store, self.llm_client,
                                    node_id=node.id, context=ctx.template_context)
        session = await self._save_variables(session, outcome.values)
        return NodeOutcome(session, redirect_to=outcome.redirect_to)

    async def _agent(self, node: AgentNode, session, ctx) -> NodeOutcome:
        if self.llm_client is None:
            raise NodeConfigurationError("no language-model client configured",
                                         session_id=session.id, node_id=node.id)

        async def send(text: str) -> None:
            await self.sender.send(session, content=text)

        outcome = await execute_agent(
            node.data.agenteia, session, self.store, self.llm_client, send=send,
            node_id=node.id, customer=ctx.customer, chat=ctx.chat,
            context=ctx.template_context,
        )
        ctx.customer = outcome.customer or ctx.customer
        ctx.chat = outcome.chat or ctx.chat
        session = await self._save_variables(session, outcome.values)
        if outcome.handover is not None:
            flow = outcome.handover
            session, _ = await hand_over(self.store, session, flow, flow.entry_node().id)
        return NodeOutcome(session)

    async def _jump(self, node: JumpNode, session, ctx) -> NodeOutcome:
        return NodeOutcome(session, redirect_to=node.data.target_node_id)
