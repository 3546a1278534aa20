"""Shared test fixtures for the flow interpreter."""
import pytest
from typing import Any, Optional

from channels.sender import StoreMessageSender
from config.settings import FlowConfig, HttpConfig, Settings
from database.store_memory import InMemoryFlowStore
from flows.executors import NodeExecutors, WalkContext
from flows.llm import LLMClient, LLMReply
from flows.walker import FlowWalker
from models.flow import Flow
from models.schemas import Channel, Chat, ConversationContext, Customer, Organization


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

def edge(source: str, target: str, handle: Optional[str] = None) -> dict[str, Any]:
    return {"id": f"{source}->{target}", "source": source, "target": target, "sourceHandle": handle}


def make_flow(nodes: list[dict], edges: list[dict], **extra) -> Flow:
    return Flow.model_validate({
        "id": extra.pop("id", "flow-1"),
        "organizationId": "org-1",
        "name": "Test flow",
        "nodes": nodes,
        "edges": edges,
        **extra,
    })


class FakeSleep:
    """Records requested pauses instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeLLMClient(LLMClient):
    """Returns queued replies and records every request."""

    def __init__(self, *replies: LLMReply):
        self.replies = list(replies)
        self.requests: list[dict[str, Any]] = []

    async def complete(self, system, messages, tools, model="", temperature=None, max_tokens=None):
        self.requests.append({
            "system": system, "messages": messages, "tools": tools, "model": model,
        })
        return self.replies.pop(0) if self.replies else LLMReply(text="")


# ──────────────────────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def organization() -> Organization:
    return Organization(id="org-1", name="Padaria Central", timezone="America/Sao_Paulo")


@pytest.fixture
def channel() -> Channel:
    return Channel(id="chan-wa", organization_id="org-1", type="whatsapp", name="WhatsApp")


@pytest.fixture
def customer() -> Customer:
    return Customer(
        id="cust-1", organization_id="org-1", name="Ana Souza",
        email="ana@example.com", phone="+5511999990000",
        custom_fields={"plan": "gold", "city": "Campinas"},
    )


@pytest.fixture
def chat() -> Chat:
    return Chat(
        id="chat-1", organization_id="org-1", customer_id="cust-1", channel_id="chan-wa",
        funnel_id="funnel-1", funnel_stage_id="stage-2", sale_value=150.0,
        team_id="team-sales", tags=["vip", "promo"],
    )


@pytest.fixture
def ctx(organization, channel, customer, chat) -> ConversationContext:
    return ConversationContext(
        organization=organization, channel=channel, customer=customer,
        chat=chat, is_first_contact=True,
    )


@pytest.fixture
async def store(organization, channel, customer, chat) -> InMemoryFlowStore:
    store = InMemoryFlowStore()
    await store.save_organization(organization)
    await store.save_channel(channel)
    await store.save_customer(customer)
    await store.save_chat(chat)
    return store


# ──────────────────────────────────────────────────────────────
#  Interpreter pieces
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def settings() -> Settings:
    return Settings(
        flow=FlowConfig(debounce_ms=20, max_steps=20),
        http=HttpConfig(timeout_s=5),
    )


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def sender(store) -> StoreMessageSender:
    return StoreMessageSender(store)


@pytest.fixture
def executors(store, sender, llm, fake_sleep, settings) -> NodeExecutors:
    return NodeExecutors(
        store, sender, llm_client=llm, sleep=fake_sleep,
        flow_config=settings.flow, http_config=settings.http,
    )


@pytest.fixture
def walker(store, executors, settings) -> FlowWalker:
    return FlowWalker(store, executors, max_steps=settings.flow.max_steps)


@pytest.fixture
def walk_ctx_for(customer, chat):
    def build(flow: Flow) -> WalkContext:
        return WalkContext(flow=flow, customer=customer, chat=chat)
    return build
