"""Tests for the timeout scanner."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx

from conftest import FakeLLMClient, edge, make_flow

from flows.engine import FlowEngine
from flows.timeouts import TimeoutScanner


def _flow():
    return make_flow(
        nodes=[
            {"id": "start-node", "type": "start"},
            {"id": "ask", "type": "input", "data": {"inputConfig": {"timeout": 1}}},
            {"id": "nudge", "type": "text", "data": {"text": "Ainda aí?"}},
        ],
        edges=[edge("start-node", "ask"), edge("ask", "nudge", "timeout")],
    )


async def _parked_session(engine, store, ctx, timeout_at):
    flow = _flow()
    await store.save_flow(flow)
    session = await engine.start_flow(ctx, flow)
    parked = await engine.continue_flow(session, None)
    return await store.save_session(parked.model_copy(update={"timeout_at": timeout_at}))


class TestScanCycle:
    async def test_resumes_due_sessions(self, store, sender, settings, fake_sleep, ctx):
        engine = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        await _parked_session(engine, store, ctx, datetime.now(timezone.utc) - timedelta(seconds=5))
        scanner = TimeoutScanner(engine, interval_s=60)

        stats = await scanner.scan_cycle()

        assert stats == {"due": 1, "resumed": 1, "errors": 0}
        assert [m.content for m in await store.get_chat_messages("chat-1")] == ["Ainda aí?"]
        assert await store.find_active_session("cust-1", "chat-1") is None

    async def test_nothing_due(self, store, sender, settings, fake_sleep, ctx):
        engine = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        await _parked_session(engine, store, ctx, datetime.now(timezone.utc) + timedelta(minutes=1))
        stats = await TimeoutScanner(engine).scan_cycle()
        assert stats == {"due": 0, "resumed": 0, "errors": 0}

    async def test_failed_branch_is_retried(self, store, sender, settings, fake_sleep, ctx):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500) if len(calls) == 1 else httpx.Response(200, json={"ok": True})

        engine = FlowEngine(store, sender, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
                            llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        flow = make_flow(
            nodes=[
                {"id": "start-node", "type": "start"},
                {"id": "ask", "type": "input", "data": {"inputConfig": {"timeout": 1}}},
                {"id": "call", "type": "http_request",
                 "data": {"method": "POST", "url": "https://crm.example.com/followups"}},
                {"id": "nudge", "type": "text", "data": {"text": "Ainda aí?"}},
            ],
            edges=[edge("start-node", "ask"), edge("ask", "call", "timeout"), edge("call", "nudge")],
        )
        await store.save_flow(flow)
        session = await engine.start_flow(ctx, flow)
        parked = await engine.continue_flow(session, None)
        due_at = datetime.now(timezone.utc) - timedelta(seconds=5)
        await store.save_session(parked.model_copy(update={"timeout_at": due_at}))
        scanner = TimeoutScanner(engine)

        assert await scanner.scan_cycle() == {"due": 1, "resumed": 0, "errors": 1}
        still_parked = await store.get_session(parked.id)
        assert still_parked.current_node_id == "ask"
        assert still_parked.timeout_at == due_at

        assert await scanner.scan_cycle() == {"due": 1, "resumed": 1, "errors": 0}
        assert len(calls) == 2
        assert [m.content for m in await store.get_chat_messages("chat-1")] == ["Ainda aí?"]
        assert not (await store.get_session(parked.id)).is_active


class TestLoop:
    async def test_start_and_stop(self):
        engine = AsyncMock()
        engine.store.find_timed_out_sessions = AsyncMock(return_value=[])
        scanner = TimeoutScanner(engine, interval_s=0.01)

        await scanner.start()
        await asyncio.sleep(0.05)
        await scanner.stop()

        assert engine.store.find_timed_out_sessions.await_count >= 1
        assert scanner._task.done()
