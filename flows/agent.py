"""
Agent node — a stored prompt drives the model; tool calls run actions.

The prompt record carries the system text, the model settings, the tool
catalog and, per tool, the actions a call triggers:

    update_customer   name and funnel/stage, direct or mapped from an argument
    update_chat       status, title, team, direct or mapped from an argument
    start_flow        hand the chat over to another published flow

A config value is either direct (``name``, ``status``, ``flowId`` …) or a
lookup ``{"variable": <argument>, "mapping": {<argument value>: <value>}}``
under the matching ``…Mapping`` key. Action filters compare tool arguments
and skip the action when any of them fails.

Tool arguments are written to session variables. When actions ran, the
model is called again with their results and that reply is stored in the
node's answer variable; otherwise the first reply is.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

import pytz
import structlog

from database.store_base import BaseFlowStore
from flows.errors import ExternalCallError, FlowError
from flows.interpolation import replace_variables
from flows.llm import LLMClient, coerce_enums, prepare_tools
from models.flow import AgentConfigData, Flow, FlowSession, ToolDef
from models.schemas import (
    ActionFilter, Chat, ChatStatus, Customer, Prompt, PromptAction, SenderType,
)
from utils.conditions import apply_operator

logger = structlog.get_logger()

DEFAULT_TIMEZONE = "America/Sao_Paulo"

Send = Callable[[str], Awaitable[Any]]

FILTER_OPERATORS = {
    "equals": "equalTo",
    "not_equals": "notEqual",
    "contains": "contains",
    "not_contains": "notContains",
    "starts_with": "startsWith",
    "ends_with": "endsWith",
    "greater_than": "greaterThan",
    "less_than": "lessThan",
    "greater_than_or_equal": "greaterThanOrEqual",
    "less_than_or_equal": "lessThanOrEqual",
    "exists": "isSet",
    "not_exists": "isEmpty",
}

FOLLOW_UP_INSTRUCTION = (
    "The actions requested through your tools have run. Their results follow as JSON. "
    "Answer the customer taking these results into account and do not repeat raw data."
)


@dataclass
class AgentOutcome:
    values: dict[str, Any] = field(default_factory=dict)
    results: list[dict[str, Any]] = field(default_factory=list)
    customer: Optional[Customer] = None
    chat: Optional[Chat] = None
    handover: Optional[Flow] = None


# ══════════════════════════════════════════════════════════════
#  CONTEXT
# ══════════════════════════════════════════════════════════════

def context_block(prompt: Prompt, customer: Optional[Customer], chat: Optional[Chat],
                  now: Optional[datetime] = None) -> str:
    try:
        tz = pytz.timezone(prompt.timezone or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning("agent_unknown_timezone", prompt_id=prompt.id, timezone=prompt.timezone)
        tz = pytz.timezone(DEFAULT_TIMEZONE)
    local = now.astimezone(tz) if now is not None else datetime.now(tz)
    lines = [f"Today is {local:%B} {local.day}, {local.year} ({local:%A}), "
             f"current time is {local:%H:%M} ({tz.zone} timezone)."]
    if customer is not None and customer.name:
        lines.append(f'Customer name: "{customer.name}"')
    if chat is not None and chat.title:
        lines.append(f'Conversation title: "{chat.title}"')
    return "[SYSTEM CONTEXT INFO: " + "\n".join(lines) + "]"


async def chat_history(store: BaseFlowStore, session: FlowSession) -> list[dict[str, str]]:
    roles = {SenderType.CUSTOMER: "user", SenderType.AGENT: "assistant"}
    return [
        {"role": roles[m.sender_type], "content": m.content}
        for m in await store.get_chat_messages(session.chat_id)
        if m.content and m.sender_type in roles
    ]


# ══════════════════════════════════════════════════════════════
#  ACTIONS
# ══════════════════════════════════════════════════════════════

def filters_pass(filters: list[ActionFilter], args: Mapping[str, Any]) -> bool:
    for f in filters:
        operator = FILTER_OPERATORS.get(f.operator)
        # incomplete or unknown filters do not block the action
        if not f.variable or operator is None:
            continue
        if not apply_operator(operator, args.get(f.variable), f.value):
            return False
    return True


def pick(config: Mapping[str, Any], key: str, args: Mapping[str, Any]) -> Any:
    """Direct ``config[key]``, else ``config[key + "Mapping"]`` resolved against ``args``."""
    if config.get(key):
        return config[key]
    lookup = config.get(f"{key}Mapping") or {}
    variable, mapping = lookup.get("variable"), lookup.get("mapping") or {}
    if not variable or not mapping:
        return None
    value = args.get(variable)
    if value in (None, ""):
        return None
    return mapping.get(str(value))


class ActionRunner:
    """Runs the actions attached to a tool call against the session's records."""

    def __init__(self, store: BaseFlowStore, session: FlowSession, outcome: AgentOutcome):
        self.store = store
        self.session = session
        self.outcome = outcome
        self._handlers = {
            "update_customer": self._update_customer,
            "update_chat": self._update_chat,
            "start_flow": self._start_flow,
        }

    async def run(self, tool_name: str, actions: list[PromptAction],
                  args: Mapping[str, Any]) -> list[dict[str, Any]]:
        results = []
        for action in actions:
            handler = self._handlers.get(action.type)
            if handler is None:
                logger.warning("agent_action_unsupported", action_type=action.type,
                               session_id=self.session.id)
                continue
            if not filters_pass(action.filters, args):
                logger.debug("agent_action_filtered", action=action.name or action.type,
                             session_id=self.session.id)
                continue
            try:
                result = await handler(action.config, args)
            except FlowError as e:
                logger.warning("agent_action_failed", action_type=action.type,
                               session_id=self.session.id, error=str(e))
                result = {"status": "error", "message": f"Error executing {action.type}: {e}"}
            results.append({
                **result,
                "action_type": action.type,
                "action_name": action.name or action.type,
                "tool_name": tool_name,
                "send_message": action.send_message,
            })
        return results

    async def _update_customer(self, config, args) -> dict[str, Any]:
        name = pick(config, "name", args)
        funnel_id = pick(config, "funnelId", args)
        updates = []
        if name:
            customer = await self.store.update_customer(self.session.customer_id, name=str(name))
            if customer is not None:
                self.outcome.customer = customer
                updates.append(f"name: {name}")
        if funnel_id:
            fields = {"funnel_id": funnel_id}
            # a direct stage only applies together with a direct funnel
            if config.get("funnelId") and config.get("stageId"):
                fields["funnel_stage_id"] = config["stageId"]
            chat = await self.store.update_chat(self.session.chat_id, **fields)
            if chat is not None:
                self.outcome.chat = chat
                updates.extend(f"{k}: {v}" for k, v in fields.items())
        if not updates:
            return {"status": "info", "message": "No updates needed for customer."}
        return {"status": "success", "message": "Customer data successfully updated.",
                "updates": ", ".join(updates)}

    async def _update_chat(self, config, args) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        status = pick(config, "status", args)
        if status:
            try:
                fields["status"] = ChatStatus(status)
            except ValueError:
                return {"status": "error", "message": f"Unknown chat status: {status}"}
        title = pick(config, "title", args)
        if title:
            fields["title"] = str(title)
        team_id = pick(config, "teamId", args)
        if team_id:
            fields["team_id"] = team_id
        if not fields:
            return {"status": "info", "message": "No updates needed for chat."}
        chat = await self.store.update_chat(self.session.chat_id, **fields)
        if chat is None:
            return {"status": "error", "message": "Chat not found."}
        self.outcome.chat = chat
        return {
            "status": "success", "message": "Chat data successfully updated.",
            "updates": ", ".join(f"{k}: {getattr(v, 'value', v)}" for k, v in fields.items()),
        }

    async def _start_flow(self, config, args) -> dict[str, Any]:
        flow_id = pick(config, "flowId", args)
        if not flow_id:
            return {"status": "error", "message": "No flow specified to start."}
        flow = await self.store.get_flow(flow_id)
        if flow is None or not flow.is_published:
            return {"status": "error",
                    "message": f"The flow {flow_id} was not found or is not published."}
        if flow.entry_node() is None:
            return {"status": "error", "message": f"The flow {flow_id} has no start node."}
        self.outcome.handover = flow
        return {"status": "success",
                "message": f"New automated flow started: {flow.name or 'Automated Flow'}."}


# ══════════════════════════════════════════════════════════════
#  NODE
# ══════════════════════════════════════════════════════════════

async def execute_agent(
    config: AgentConfigData,
    session: FlowSession,
    store: BaseFlowStore,
    client: LLMClient,
    send: Optional[Send] = None,
    node_id: str = "",
    customer: Optional[Customer] = None,
    chat: Optional[Chat] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> AgentOutcome:
    outcome = AgentOutcome()
    if not config.prompt_id:
        logger.warning("agent_prompt_missing", session_id=session.id, node_id=node_id)
        return outcome
    prompt = await store.get_prompt(config.prompt_id)
    if prompt is None:
        logger.warning("agent_prompt_not_found", prompt_id=config.prompt_id,
                       session_id=session.id, node_id=node_id)
        return outcome

    system = "\n\n".join(p for p in (
        replace_variables(prompt.content, session, context),
        context_block(prompt, customer, chat),
    ) if p)
    messages = await chat_history(store, session)
    tool_defs = [ToolDef.model_validate(t) for t in prompt.tools]
    request = {"model": prompt.model, "temperature": prompt.temperature,
               "max_tokens": prompt.max_tokens}

    try:
        reply = await client.complete(system=system, messages=messages,
                                      tools=prepare_tools(tool_defs), **request)
        runner = ActionRunner(store, session, outcome)
        for call in reply.tool_calls:
            tool = next((t for t in tool_defs if t.name == call.name), None)
            if tool is None:
                logger.warning("agent_unknown_tool", tool=call.name, session_id=session.id)
                continue
            args = coerce_enums(tool, call.arguments)
            outcome.values.update(args)
            outcome.results.extend(
                await runner.run(tool.name, prompt.destinations.get(tool.name, []), args)
            )
        text = reply.text
        if outcome.results:
            follow_up = f"{system}\n\n{FOLLOW_UP_INSTRUCTION}\n" + json.dumps(
                [{k: v for k, v in r.items() if k != "send_message"} for r in outcome.results],
                ensure_ascii=False, default=str,
            )
            text = (await client.complete(system=follow_up, messages=messages,
                                          tools=[], **request)).text
    except ExternalCallError as e:
        e.session_id, e.node_id = session.id, node_id
        raise

    if send is not None:
        for result in outcome.results:
            mark = {"success": "✅", "error": "❌"}.get(result["status"])
            if result["send_message"] and mark and result.get("message"):
                await send(f"{mark} {result['message']}")

    if config.variable_name and text:
        outcome.values[config.variable_name] = text
    logger.info("agent_reply", session_id=session.id, node_id=node_id,
                prompt_id=prompt.id, tools=[c.name for c in reply.tool_calls],
                actions=len(outcome.results), handover=outcome.handover.id if outcome.handover else None)
    return outcome
