"""
Language-model node — prompt + history + tool catalog → reply or tool call.

A plain reply is stored in the node's answer variable. A tool call writes its
arguments to variables (after coercing enum values) and redirects the walk:
to the target of the first matching per-argument condition, else to the
tool's default target.

The model itself is behind LLMClient; ProviderLLMClient talks to OpenAI or
Anthropic depending on settings.
"""
from __future__ import annotations

import abc
import copy
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import structlog

from config.settings import LLMConfig, get_settings
from database.store_base import BaseFlowStore
from flows.errors import ExternalCallError, NodeConfigurationError
from flows.interpolation import replace_variables
from models.flow import FlowSession, LLMConfigData, ToolDef
from models.schemas import MessageDirection, SenderType
from utils.conditions import as_text

logger = structlog.get_logger()


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMReply:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class LLMOutcome:
    values: dict[str, Any] = field(default_factory=dict)
    redirect_to: Optional[str] = None


# ══════════════════════════════════════════════════════════════
#  CLIENTS
# ══════════════════════════════════════════════════════════════

class LLMClient(abc.ABC):
    """Minimal chat-completion interface with function calling."""

    @abc.abstractmethod
    async def complete(
        self,
        system: str,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]],
        model: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMReply:
        ...


class ProviderLLMClient(LLMClient):
    """
    OpenAI or Anthropic, chosen by ``llm.provider``.
    Tools are passed in the OpenAI function shape and converted for Anthropic.
    """

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI, OpenAIError
                try:
                    self._client = AsyncOpenAI(api_key=self.config.api_key or None,
                                               timeout=self.config.timeout_s)
                except OpenAIError as e:
                    # raised when no API key is configured
                    raise ExternalCallError(f"openai client unavailable: {e}") from e
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key or None,
                                                        timeout=self.config.timeout_s)
            logger.info("llm_client_initialized", provider=self.config.provider,
                        model=self.config.model)
        return self._client

    async def complete(self, system, messages, tools, model="", temperature=None, max_tokens=None):
        client = await self._get_client()
        model = model or self.config.model
        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature

        if self.is_openai:
            from openai import OpenAIError
            kwargs: dict[str, Any] = {}
            if tools:
                kwargs = {"tools": tools, "tool_choice": "auto"}
            oai_messages = ([{"role": "system", "content": system}] if system else []) + messages
            try:
                response = await client.chat.completions.create(
                    model=model, messages=oai_messages, temperature=temperature,
                    max_tokens=max_tokens, **kwargs,
                )
            except OpenAIError as e:
                raise ExternalCallError(f"openai call failed: {e}") from e
            message = response.choices[0].message
            calls = []
            for tc in message.tool_calls or []:
                try:
                    args = json.loads(tc.function.arguments or "{}")
                except ValueError:
                    args = {}
                calls.append(ToolCall(tc.function.name, args if isinstance(args, dict) else {}))
            return LLMReply(text=message.content or "", tool_calls=calls)

        import anthropic
        kwargs = {}
        if tools:
            kwargs["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description") or "",
                    "input_schema": t["function"]["parameters"],
                }
                for t in tools
            ]
        if system:
            kwargs["system"] = system
        try:
            response = await client.messages.create(
                model=model, max_tokens=max_tokens, temperature=temperature,
                messages=_alternate(messages), **kwargs,
            )
        except anthropic.AnthropicError as e:
            raise ExternalCallError(f"anthropic call failed: {e}") from e
        text = "".join(b.text for b in response.content if b.type == "text")
        calls = [ToolCall(b.name, dict(b.input or {})) for b in response.content if b.type == "tool_use"]
        return LLMReply(text=text, tool_calls=calls)


def _alternate(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    """Anthropic wants user-first, strictly alternating turns."""
    merged: list[dict[str, str]] = []
    for m in messages:
        if merged and merged[-1]["role"] == m["role"]:
            merged[-1] = {"role": m["role"], "content": f"{merged[-1]['content']}\n{m['content']}"}
        else:
            merged.append(dict(m))
    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    return merged or [{"role": "user", "content": "..."}]


# ══════════════════════════════════════════════════════════════
#  TOOLS
# ══════════════════════════════════════════════════════════════

def prepare_tools(tools: list[ToolDef]) -> list[dict[str, Any]]:
    """Function-calling catalog; null/empty enum values are dropped."""
    prepared = []
    for tool in tools:
        parameters = copy.deepcopy(tool.parameters) or {"type": "object", "properties": {}}
        for name, prop in (parameters.get("properties") or {}).items():
            if not isinstance(prop, dict) or not isinstance(prop.get("enum"), list):
                continue
            prop["enum"] = [v for v in prop["enum"] if v is not None and v != ""]
            if not prop["enum"]:
                del prop["enum"]
        prepared.append({
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": parameters,
            },
        })
    return prepared


def coerce_enums(tool: ToolDef, args: dict[str, Any]) -> dict[str, Any]:
    """Replace values outside a parameter's enum with the first allowed value."""
    properties = (tool.parameters or {}).get("properties") or {}
    result = dict(args)
    for key, value in args.items():
        allowed = [v for v in (properties.get(key) or {}).get("enum") or [] if v is not None and v != ""]
        if allowed and value not in allowed:
            logger.warning("llm_tool_enum_coerced", tool=tool.name, param=key,
                           value=value, replaced_with=allowed[0])
            result[key] = allowed[0]
    return result


def resolve_tool_target(tool: ToolDef, args: dict[str, Any]) -> Optional[str]:
    for cond in tool.conditions:
        if not (cond.param_name and cond.target_node_id) or cond.value in (None, ""):
            continue
        if cond.param_name in args and as_text(args[cond.param_name]) == as_text(cond.value):
            return cond.target_node_id
    return tool.default_target_node_id or tool.target_node_id or None


# ══════════════════════════════════════════════════════════════
#  CONTEXT
# ══════════════════════════════════════════════════════════════

async def build_system_prompt(config: LLMConfigData, session: FlowSession, store: BaseFlowStore,
                              context: Optional[Mapping[str, Any]] = None) -> str:
    if config.prompt_type == "select" and config.prompt_id:
        prompt = await store.get_prompt(config.prompt_id)
        if prompt is None:
            logger.warning("llm_prompt_not_found", prompt_id=config.prompt_id, session_id=session.id)
            return ""
        return replace_variables(prompt.content, session, context)
    if config.custom_prompt:
        return replace_variables(config.custom_prompt, session, context)
    return ""


async def build_history(config: LLMConfigData, session: FlowSession,
                        store: BaseFlowStore) -> list[dict[str, str]]:
    if config.message_type == "chatMessages":
        return [
            {"role": "user" if m.sender_type == SenderType.CUSTOMER else "assistant",
             "content": m.content}
            for m in await store.get_chat_messages(session.chat_id)
            if m.content
        ]
    if config.message_type == "allClientMessages":
        return [
            {"role": "user" if m.direction == MessageDirection.INBOUND else "assistant",
             "content": m.content}
            for m in await store.get_customer_messages(session.customer_id, session.channel_id)
            if m.content
        ]
    return []


# ══════════════════════════════════════════════════════════════
#  NODE
# ══════════════════════════════════════════════════════════════

async def execute_llm(
    config: LLMConfigData,
    session: FlowSession,
    store: BaseFlowStore,
    client: LLMClient,
    node_id: str = "",
    context: Optional[Mapping[str, Any]] = None,
) -> LLMOutcome:
    if config.api_type != "textGeneration":
        raise NodeConfigurationError(f"unsupported llm api type: {config.api_type}",
                                     session_id=session.id, node_id=node_id)

    system = await build_system_prompt(config, session, store, context)
    messages = await build_history(config, session, store)
    tools = prepare_tools(config.tools)

    try:
        reply = await client.complete(
            system=system, messages=messages, tools=tools,
            model=config.model, temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    except ExternalCallError as e:
        e.session_id, e.node_id = session.id, node_id
        raise

    outcome = LLMOutcome()
    if reply.tool_calls:
        for call in reply.tool_calls:
            tool = next((t for t in config.tools if t.name == call.name), None)
            if tool is None:
                logger.warning("llm_unknown_tool", tool=call.name, session_id=session.id)
                continue
            args = coerce_enums(tool, call.arguments)
            outcome.values.update(args)
            if outcome.redirect_to is None:
                outcome.redirect_to = resolve_tool_target(tool, args)
        logger.info("llm_tool_called", session_id=session.id, node_id=node_id,
                    tools=[c.name for c in reply.tool_calls], redirect_to=outcome.redirect_to)
        return outcome

    if config.variable_name:
        outcome.values[config.variable_name] = reply.text
    logger.info("llm_reply", session_id=session.id, node_id=node_id, chars=len(reply.text))
    return outcome
