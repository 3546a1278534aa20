"""Tests for the flow engine: routing, debouncing and lifecycle."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeLLMClient, edge, make_flow

from flows.debounce import MERGE_JOIN, merge_pending, pending_record
from flows.engine import FlowEngine
from flows.errors import FlowDefinitionError, SessionNotFoundError
from flows.sessions import end_session
from models.flow import FlowTrigger
from models.schemas import InboundMessage
from models.variables import get_variable


def _echo_flow(**extra):
    return make_flow(
        nodes=[
            {"id": "start-node", "type": "start"},
            {"id": "ask", "type": "input", "data": {"inputConfig": {"variableName": "answer"}}},
            {"id": "echo", "type": "text", "data": {"text": "Você disse: {{answer}}"}},
        ],
        edges=[edge("start-node", "ask"), edge("ask", "echo")],
        **extra,
    )


@pytest.fixture
def engine(store, sender, settings, fake_sleep):
    return FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)


async def _add_trigger(store, flow, **fields):
    await store.save_flow(flow)
    await store.save_trigger("org-1", FlowTrigger(flow_id=flow.id, **fields))


async def _contents(store):
    return [m.content for m in await store.get_chat_messages("chat-1")]


class TestMergePending:
    def test_latest_wins(self):
        now = datetime.now(timezone.utc)
        pending = [pending_record(InboundMessage(content=c), now) for c in ("a", "b", "c")]
        assert merge_pending(pending).content == "c"

    def test_join(self):
        now = datetime.now(timezone.utc)
        pending = [pending_record(InboundMessage(content=c), now) for c in ("oi", "", "tudo bem?")]
        merged = merge_pending(pending, MERGE_JOIN)
        assert merged.content == "oi\ntudo bem?"
        assert len(merged.metadata["original_messages"]) == 3


class TestProcessMessage:
    async def test_no_trigger_no_session(self, engine, ctx):
        assert await engine.process_message(ctx, InboundMessage(content="oi")) is None

    async def test_trigger_starts_flow(self, engine, store, ctx):
        flow = _echo_flow()
        await _add_trigger(store, flow)

        session = await engine.process_message(ctx, InboundMessage(content="oi"))

        assert session.flow_id == flow.id
        assert session.current_node_id == "start-node"
        assert len(session.message_history) == 1
        assert (await store.get_chat("chat-1")).flow_session_id == session.id

        await engine.debouncer.drain()
        stored = await store.get_session(session.id)
        assert stored.current_node_id == "ask"
        assert stored.message_history == []

    async def test_not_first_contact(self, engine, store, ctx):
        await _add_trigger(store, _echo_flow())
        ctx.is_first_contact = False
        assert await engine.process_message(ctx, InboundMessage(content="oi")) is None

    async def test_burst_collapses_to_one_walk(self, engine, store, ctx):
        await _add_trigger(store, _echo_flow())
        await engine.process_message(ctx, InboundMessage(content="oi"))
        await engine.debouncer.drain()

        for content in ("quero", "uma", "pizza"):
            await engine.process_message(ctx, InboundMessage(content=content))
        assert engine.debouncer.pending_count == 1
        await engine.debouncer.drain()

        assert await _contents(store) == ["Você disse: pizza"]
        assert await store.find_active_session("cust-1", "chat-1") is None

    async def test_join_mode(self, store, sender, settings, fake_sleep, ctx):
        settings.flow.debounce_merge = MERGE_JOIN
        engine = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        await _add_trigger(store, _echo_flow())
        await engine.process_message(ctx, InboundMessage(content="oi"))
        await engine.debouncer.drain()

        for content in ("quero", "pizza"):
            await engine.process_message(ctx, InboundMessage(content=content))
        await engine.debouncer.drain()

        assert await _contents(store) == ["Você disse: quero\npizza"]

    async def test_flow_debounce_time_overrides_default(self, engine, store, ctx, monkeypatch):
        await _add_trigger(store, _echo_flow(debounceTime=1234))
        delays = []
        monkeypatch.setattr(engine.debouncer, "schedule", lambda session, ms: delays.append(ms))
        await engine.process_message(ctx, InboundMessage(content="oi"))
        assert delays == [1234]

    async def test_explicit_flow_replaces_active_session(self, engine, store, ctx):
        first = _echo_flow()
        await _add_trigger(store, first)
        old = await engine.process_message(ctx, InboundMessage(content="oi"))

        other = _echo_flow(id="flow-2")
        await store.save_flow(other)
        new = await engine.process_message(ctx, InboundMessage(content="oi"), flow=other)

        assert new.id != old.id
        assert new.flow_id == "flow-2"
        assert not (await store.get_session(old.id)).is_active
        assert (await store.get_chat("chat-1")).flow_session_id == new.id
        await engine.debouncer.drain()

    async def test_missing_flow_pauses_session(self, engine, store, ctx):
        flow = _echo_flow()
        await _add_trigger(store, flow)
        session = await engine.process_message(ctx, InboundMessage(content="oi"))
        await engine.debouncer.drain()
        store._flows.clear()

        assert await engine.process_message(ctx, InboundMessage(content="ainda aí?")) is None
        assert not (await store.get_session(session.id)).is_active

    async def test_flow_without_entry_node(self, engine, store, ctx):
        flow = make_flow(nodes=[{"id": "t", "type": "text"}], edges=[])
        await _add_trigger(store, flow)
        assert await engine.process_message(ctx, InboundMessage(content="oi")) is None


class TestDirectCalls:
    async def test_continue_flow_bypasses_debounce(self, engine, store, ctx):
        flow = _echo_flow()
        await store.save_flow(flow)
        session = await engine.start_flow(ctx, flow)

        parked = await engine.continue_flow(session, None)
        ended = await engine.continue_flow(parked, InboundMessage(content="sim"))

        assert get_variable(ended.variables, "answer") == "sim"
        assert await _contents(store) == ["Você disse: sim"]

    async def test_start_flow_twice_returns_existing(self, engine, store, ctx):
        flow = _echo_flow()
        await store.save_flow(flow)
        first = await engine.start_flow(ctx, flow)
        second = await engine.start_flow(ctx, flow)
        assert first.id == second.id

    async def test_walk_with_deleted_flow(self, engine, store, ctx):
        flow = _echo_flow()
        await store.save_flow(flow)
        session = await engine.start_flow(ctx, flow)
        store._flows.clear()
        with pytest.raises(FlowDefinitionError):
            await engine.continue_flow(session, None)

    async def test_failed_timer_walk_is_reported(self, engine, store, ctx, monkeypatch):
        reports = []
        monkeypatch.setattr("flows.debounce.report_error",
                            lambda error, event, **context: reports.append((error, event, context)))
        await _add_trigger(store, _echo_flow())
        session = await engine.process_message(ctx, InboundMessage(content="oi"))
        store._flows.clear()

        await engine.debouncer.drain()

        [(error, event, context)] = reports
        assert isinstance(error, FlowDefinitionError)
        assert event == "flow_debounce_walk"
        assert context == {"session_id": session.id, "organization_id": "org-1", "chat_id": "chat-1"}

    async def test_pause_cancels_timer(self, engine, store, ctx):
        await _add_trigger(store, _echo_flow())
        session = await engine.process_message(ctx, InboundMessage(content="oi"))
        assert engine.debouncer.pending_count == 1

        paused = await engine.pause_flow(session)

        assert engine.debouncer.pending_count == 0
        assert not paused.is_active
        assert (await store.get_chat("chat-1")).flow_session_id is None


class TestTimeouts:
    def _flow(self):
        return make_flow(
            nodes=[
                {"id": "start-node", "type": "start"},
                {"id": "ask", "type": "input", "data": {"inputConfig": {"timeout": 5}}},
                {"id": "late", "type": "text", "data": {"text": "Ainda está aí?"}},
            ],
            edges=[edge("start-node", "ask"), edge("ask", "late", "timeout")],
        )

    async def _parked(self, engine, store, ctx, timeout_at):
        flow = self._flow()
        await store.save_flow(flow)
        session = await engine.start_flow(ctx, flow)
        parked = await engine.continue_flow(session, None)
        return await store.save_session(parked.model_copy(update={"timeout_at": timeout_at}))

    async def test_due_session_follows_edge(self, engine, store, ctx):
        parked = await self._parked(engine, store, ctx, datetime.now(timezone.utc) - timedelta(seconds=1))
        result = await engine.handle_session_timeout(parked)
        assert not result.is_active
        assert await _contents(store) == ["Ainda está aí?"]

    async def test_not_yet_due_is_skipped(self, engine, store, ctx):
        parked = await self._parked(engine, store, ctx, datetime.now(timezone.utc) + timedelta(minutes=5))
        result = await engine.handle_session_timeout(parked)
        assert result.is_active
        assert await _contents(store) == []

    async def test_unknown_session(self, engine, store, ctx):
        flow = self._flow()
        await store.save_flow(flow)
        session = await engine.start_flow(ctx, flow)
        store._sessions.clear()
        with pytest.raises(SessionNotFoundError):
            await engine.handle_session_timeout(session)


class TestRecovery:
    async def test_recover_pending_after_restart(self, store, sender, settings, fake_sleep, ctx):
        await _add_trigger(store, _echo_flow())
        first = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        await first.process_message(ctx, InboundMessage(content="oi"))
        await first.close()

        restarted = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=fake_sleep)
        assert await restarted.recover_pending() == 1
        await restarted.debouncer.drain()

        session = await store.find_active_session("cust-1", "chat-1")
        assert session.current_node_id == "ask"
        assert session.message_history == []


class GatedSleep:
    """A delay node that blocks until the test releases it."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.released = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.entered.set()
        await self.released.wait()


class TestConcurrentWalks:
    def _slow_flow(self):
        return make_flow(
            nodes=[
                {"id": "start-node", "type": "start"},
                {"id": "ask", "type": "input", "data": {"inputConfig": {"variableName": "answer"}}},
                {"id": "wait", "type": "delay", "data": {"delaySeconds": 30}},
                {"id": "ask2", "type": "input", "data": {"text": "Mais alguma coisa?"}},
            ],
            edges=[edge("start-node", "ask"), edge("ask", "wait"), edge("wait", "ask2")],
        )

    async def _walk_into_delay(self, store, sender, settings, ctx):
        gate = GatedSleep()
        engine = FlowEngine(store, sender, llm_client=FakeLLMClient(), settings=settings, sleep=gate)
        flow = self._slow_flow()
        await store.save_flow(flow)
        parked = await engine.continue_flow(await engine.start_flow(ctx, flow), None)
        walk = asyncio.create_task(engine.continue_flow(parked, InboundMessage(content="oi")))
        await asyncio.wait_for(gate.entered.wait(), timeout=1)
        return engine, gate, parked, walk

    async def test_replacing_flow_waits_for_running_walk(self, store, sender, settings, ctx):
        engine, gate, old, walk = await self._walk_into_delay(store, sender, settings, ctx)
        replacement = _echo_flow(id="flow-2")
        await store.save_flow(replacement)

        start = asyncio.create_task(
            engine.process_message(ctx, InboundMessage(content="promo"), flow=replacement))
        await asyncio.sleep(0.01)
        assert not start.done()

        gate.released.set()
        await walk
        new = await start
        await engine.debouncer.drain()

        assert not (await store.get_session(old.id)).is_active
        assert [s.id for s in await store.find_active_sessions_for_chat("chat-1")] == [new.id]
        assert (await store.find_active_session("cust-1", "chat-1")).id == new.id
        assert (await store.get_chat("chat-1")).flow_session_id == new.id
        await engine.close()

    async def test_walk_stops_when_session_ended_elsewhere(self, store, sender, settings, ctx):
        engine, gate, old, walk = await self._walk_into_delay(store, sender, settings, ctx)

        # another worker ends the session without holding this process's lock
        await end_session(store, await store.get_session(old.id), reason="closed_by_agent")
        gate.released.set()
        result = await walk

        assert not result.is_active
        assert await store.find_active_session("cust-1", "chat-1") is None
        assert "Mais alguma coisa?" not in await _contents(store)
        await engine.close()
