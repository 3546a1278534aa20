"""Tests for the HTTP API."""
import httpx
import pytest

from conftest import FakeLLMClient, edge, make_flow

import api.main as main
from flows.engine import FlowEngine
from flows.timeouts import TimeoutScanner
from models.flow import FlowTrigger


@pytest.fixture
async def client(monkeypatch, store, sender, settings, fake_sleep):
    engine = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(main, "timeout_scanner", TimeoutScanner(engine))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await engine.close()


def _flow(flow_id="flow-1"):
    return make_flow(
        id=flow_id,
        nodes=[
            {"id": "start-node", "type": "start"},
            {"id": "hi", "type": "text", "data": {"text": "Bem-vindo!"}},
        ],
        edges=[edge("start-node", "hi")],
    )


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["store"] == "InMemoryFlowStore"


class TestMessages:
    async def test_buffered_on_trigger(self, client, store):
        await store.save_flow(_flow())
        await store.save_trigger("org-1", FlowTrigger(flow_id="flow-1"))

        response = await client.post("/organizations/org-1/chats/chat-1/messages",
                                     json={"content": "oi", "is_first_contact": True})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "buffered"
        assert body["session"]["flow_id"] == "flow-1"
        assert body["session"]["pending_messages"] == 1

        await main.engine.debouncer.drain()
        assert [m.content for m in await store.get_chat_messages("chat-1")] == ["Bem-vindo!"]

    async def test_ignored_without_flow(self, client):
        response = await client.post("/organizations/org-1/chats/chat-1/messages",
                                     json={"content": "oi"})
        assert response.json() == {"status": "ignored", "session": None}

    async def test_unknown_chat(self, client):
        response = await client.post("/organizations/org-1/chats/nope/messages", json={"content": "oi"})
        assert response.status_code == 404

    async def test_chat_of_other_organization(self, client, store, organization):
        await store.save_organization(organization.model_copy(update={"id": "org-2"}))
        response = await client.post("/organizations/org-2/chats/chat-1/messages", json={"content": "oi"})
        assert response.status_code == 404


class TestStartFlow:
    async def test_starts_named_flow(self, client, store):
        await store.save_flow(_flow("promo"))
        response = await client.post("/organizations/org-1/chats/chat-1/flows",
                                     json={"flow_id": "promo"})
        assert response.status_code == 200
        assert response.json()["session"]["flow_id"] == "promo"
        assert (await store.get_chat("chat-1")).flow_session_id == response.json()["session"]["id"]

    async def test_unknown_flow(self, client):
        response = await client.post("/organizations/org-1/chats/chat-1/flows", json={"flow_id": "ghost"})
        assert response.status_code == 404

    async def test_flow_without_entry(self, client, store):
        await store.save_flow(make_flow(id="broken", nodes=[{"id": "t", "type": "text"}], edges=[]))
        response = await client.post("/organizations/org-1/chats/chat-1/flows", json={"flow_id": "broken"})
        assert response.status_code == 422


async def test_timeout_check(client):
    response = await client.post("/flows/timeouts/check")
    assert response.json() == {"due": 0, "resumed": 0, "errors": 0}
