"""
Flow graph and flow session models.

Flows are authored in a visual editor and stored as JSON with camelCase keys
(``sourceHandle``, ``inputConfig``, ``splitParagraphs`` …). The models accept
both the authored camelCase and snake_case field names.

Nodes form a closed tagged union discriminated by ``type``; a flow containing
an unknown node type fails validation when it is loaded.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, field_serializer, field_validator,
)
from pydantic.alias_generators import to_camel

from models.variables import Variable, normalize_variables, variables_to_records


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowModel(BaseModel):
    """Base for authored flow documents (camelCase on the wire)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ──────────────────────────────────────────────────────────────
#  Edge handles
# ──────────────────────────────────────────────────────────────

class Handle:
    ELSE = "else"
    NO_MATCH = "no-match"
    TIMEOUT = "timeout"

    @staticmethod
    def condition(index: int) -> str:
        return f"condition-{index}"

    @staticmethod
    def option(index: int) -> str:
        return f"option{index}"


# ──────────────────────────────────────────────────────────────
#  Node payloads
# ──────────────────────────────────────────────────────────────

class TextData(FlowModel):
    text: str = ""
    split_paragraphs: bool = False
    extract_list: bool = False
    extract_links: bool = False
    list_options: Optional[dict[str, Any]] = None


class MediaData(FlowModel):
    media_url: str = ""
    caption: str = ""


class InputOption(FlowModel):
    text: str
    id: Optional[str] = None


class InputConfig(FlowModel):
    variable_name: str = ""
    timeout: Optional[float] = None           # minutes; None disables the timeout


class InputData(FlowModel):
    input_type: str = "text"                  # text | options
    text: str = ""                            # optional prompt sent when parking
    options: list[InputOption] = []
    input_config: InputConfig = InputConfig()


class SubCondition(FlowModel):
    type: str = "variable"                    # variable | clientData
    field: str = ""
    operator: str = "equalTo"
    value: Any = None
    stage_ids: list[str] = []                 # funnel-stage fields compare against these


class Condition(FlowModel):
    logic_operator: str = "AND"               # AND | OR
    sub_conditions: list[SubCondition] = []


class ConditionData(FlowModel):
    conditions: list[Condition] = []


class VariableAssignment(FlowModel):
    name: str = ""
    value: Any = ""


class VariableData(FlowModel):
    variable: Optional[VariableAssignment] = None


class DelayData(FlowModel):
    delay_seconds: float = 0


class CustomerFieldUpdate(FlowModel):
    name: str = ""
    value: Any = None


class UpdateCustomerData(FlowModel):
    action: Literal["rating", "feedback", "funnel", "team", "agent", "customer_field"] = "customer_field"
    value: Any = None                         # rating / feedback / customer_field value
    funnel_id: Optional[str] = None
    stage_id: Optional[str] = None
    team_id: Optional[str] = None
    agent_id: Optional[str] = None
    field: str = ""                           # customer_field target
    fields: list[CustomerFieldUpdate] = []    # several customer fields at once


class HeaderEntry(FlowModel):
    key: str
    value: str = ""


class ResponseMapping(FlowModel):
    path: str                                 # dot path, "$." prefix and list indexes allowed
    variable: str


class HttpRequestData(FlowModel):
    method: str = "GET"
    url: str = ""
    headers: Union[list[HeaderEntry], dict[str, str]] = []
    body: Union[str, dict[str, Any], list[Any], None] = None
    timeout_seconds: Optional[float] = None
    response_mappings: list[ResponseMapping] = []
    response_variable: str = ""               # whole JSON body, if set
    status_variable: str = ""                 # HTTP status code, if set


class ToolCondition(FlowModel):
    param_name: str = ""
    value: Any = None
    target_node_id: str = ""


class ToolDef(FlowModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = {}
    conditions: list[ToolCondition] = []
    default_target_node_id: str = ""
    target_node_id: str = ""


class LLMConfigData(FlowModel):
    api_type: str = "textGeneration"
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    prompt_type: str = "custom"               # custom | select
    custom_prompt: str = ""
    prompt_id: str = ""
    message_type: str = "none"                # none | chatMessages | allClientMessages
    variable_name: str = ""
    tools: list[ToolDef] = []


class LLMData(FlowModel):
    openai: LLMConfigData = LLMConfigData()


class AgentConfigData(FlowModel):
    prompt_id: str = ""
    variable_name: str = ""


class AgentData(FlowModel):
    agenteia: AgentConfigData = AgentConfigData()


class JumpData(FlowModel):
    target_node_id: str = ""


# ──────────────────────────────────────────────────────────────
#  Nodes: closed tagged union
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    TEXT = "text"
    MESSAGE = "message"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    INPUT = "input"
    CONDITION = "condition"
    VARIABLE = "variable"
    DELAY = "delay"
    UPDATE_CUSTOMER = "update_customer"
    HTTP_REQUEST = "http_request"
    OPENAI = "openai"
    LLM = "llm"
    AGENT = "agenteia"
    JUMP = "jump"


class StartNode(FlowModel):
    id: str
    type: Literal["start"]
    data: dict[str, Any] = {}


class TextNode(FlowModel):
    id: str
    type: Literal["text", "message"]
    data: TextData = TextData()


class MediaNode(FlowModel):
    id: str
    type: Literal["image", "audio", "video", "document"]
    data: MediaData = MediaData()


class InputNode(FlowModel):
    id: str
    type: Literal["input"]
    data: InputData = InputData()

    @property
    def is_options(self) -> bool:
        return self.data.input_type == "options"


class ConditionNode(FlowModel):
    id: str
    type: Literal["condition"]
    data: ConditionData = ConditionData()


class VariableNode(FlowModel):
    id: str
    type: Literal["variable"]
    data: VariableData = VariableData()


class DelayNode(FlowModel):
    id: str
    type: Literal["delay"]
    data: DelayData = DelayData()


class UpdateCustomerNode(FlowModel):
    id: str
    type: Literal["update_customer"]
    data: UpdateCustomerData


class HttpRequestNode(FlowModel):
    id: str
    type: Literal["http_request"]
    data: HttpRequestData = HttpRequestData()


class LLMNode(FlowModel):
    id: str
    type: Literal["openai", "llm"]
    data: LLMData = LLMData()


class AgentNode(FlowModel):
    id: str
    type: Literal["agenteia"]
    data: AgentData = AgentData()


class JumpNode(FlowModel):
    id: str
    type: Literal["jump"]
    data: JumpData = JumpData()


FlowNode = Annotated[
    Union[
        StartNode, TextNode, MediaNode, InputNode, ConditionNode, VariableNode,
        DelayNode, UpdateCustomerNode, HttpRequestNode, LLMNode, AgentNode, JumpNode,
    ],
    Field(discriminator="type"),
]

NODE_CLASSES: tuple[type, ...] = (
    StartNode, TextNode, MediaNode, InputNode, ConditionNode, VariableNode,
    DelayNode, UpdateCustomerNode, HttpRequestNode, LLMNode, AgentNode, JumpNode,
)


# ──────────────────────────────────────────────────────────────
#  Flow
# ──────────────────────────────────────────────────────────────

ENTRY_NODE_IDS = ("start-node", "start")


class Edge(FlowModel):
    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None


class Flow(FlowModel):
    """Immutable-per-version flow definition."""
    id: str
    organization_id: str = ""
    name: str = ""
    nodes: list[FlowNode] = []
    edges: list[Edge] = []
    variables: dict[str, Variable] = {}
    debounce_time: Optional[int] = None       # milliseconds
    is_published: bool = True
    is_active: bool = True

    @field_validator("variables", mode="before")
    @classmethod
    def _normalize_variables(cls, value: Any) -> dict[str, Variable]:
        return normalize_variables(value)

    @field_serializer("variables")
    def _dump_variables(self, variables: dict[str, Variable]):
        return variables_to_records(variables)

    def node(self, node_id: Optional[str]):
        if not node_id:
            return None
        return next((n for n in self.nodes if n.id == node_id), None)

    def entry_node(self):
        """The node execution starts from: id start-node/start, else first start-typed node."""
        for node_id in ENTRY_NODE_IDS:
            node = self.node(node_id)
            if node is not None:
                return node
        return next((n for n in self.nodes if n.type == NodeType.START.value), None)

    def edges_from(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]


# ──────────────────────────────────────────────────────────────
#  Triggers
# ──────────────────────────────────────────────────────────────

class TriggerRule(FlowModel):
    type: str                                 # channel | schedule
    params: dict[str, Any] = {}


class TriggerConditions(FlowModel):
    rules: list[TriggerRule] = []


class FlowTrigger(FlowModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    type: str = "first_contact"
    is_active: bool = True
    flow_id: str = ""
    conditions: TriggerConditions = TriggerConditions()
    flow: Optional[Flow] = None


# ──────────────────────────────────────────────────────────────
#  Flow Session: the durable "where execution is"
# ──────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class FlowSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_id: str
    chat_id: str
    customer_id: str
    organization_id: str = ""
    channel_id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    current_node_id: str
    input_type: Optional[str] = None
    selected_option: Optional[dict[str, Any]] = None
    variables: dict[str, Variable] = {}
    message_history: list[dict[str, Any]] = []    # inbound messages absorbed while debouncing
    debounce_timestamp: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    last_interaction: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("variables", mode="before")
    @classmethod
    def _normalize_variables(cls, value: Any) -> dict[str, Variable]:
        return normalize_variables(value)

    @field_serializer("variables")
    def _dump_variables(self, variables: dict[str, Variable]):
        return variables_to_records(variables)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def active_key(self) -> str:
        """Uniqueness key for 'one active session per (customer, chat)'."""
        return f"{self.customer_id}:{self.chat_id}"

    @property
    def is_timed_out(self) -> bool:
        if not self.timeout_at:
            return False
        timeout_at = self.timeout_at
        if timeout_at.tzinfo is None:
            timeout_at = timeout_at.replace(tzinfo=timezone.utc)
        return _utcnow() >= timeout_at
