"""Tests for first-contact trigger resolution."""
from datetime import datetime, timezone

import pytest

from conftest import make_flow

from flows.triggers import (
    check_triggers, is_channel_allowed, is_first_contact, is_within_schedule, trigger_matches,
)
from models.flow import FlowTrigger
from models.schemas import Channel, Chat

# Wednesday 2026-03-04 14:30 UTC is 11:30 in São Paulo (UTC-3)
WEDNESDAY_AFTERNOON = datetime(2026, 3, 4, 14, 30, tzinfo=timezone.utc)

BUSINESS_HOURS = {
    "timezone": "America/Sao_Paulo",
    "timeSlots": [{"day": 3, "startTime": "08:00", "endTime": "11:30"}],
}


def _flow(flow_id="flow-1", **extra):
    return make_flow(id=flow_id, nodes=[{"id": "start-node", "type": "start"}], edges=[], **extra)


def _trigger(flow, *rules, **fields):
    return FlowTrigger(flow_id=flow.id, flow=flow,
                       conditions={"rules": [{"type": t, "params": p} for t, p in rules]}, **fields)


class TestSchedule:
    def test_inside_slot_inclusive_end(self):
        assert is_within_schedule(BUSINESS_HOURS, WEDNESDAY_AFTERNOON)

    def test_wrong_day(self):
        params = {**BUSINESS_HOURS, "timeSlots": [{"day": 4, "startTime": "00:00", "endTime": "23:59"}]}
        assert not is_within_schedule(params, WEDNESDAY_AFTERNOON)

    def test_rule_timezone_applies(self):
        utc_hours = {"timezone": "UTC", "timeSlots": [{"day": 3, "startTime": "08:00", "endTime": "11:30"}]}
        assert not is_within_schedule(utc_hours, WEDNESDAY_AFTERNOON)

    def test_no_slots_passes(self):
        assert is_within_schedule({"timezone": "UTC"}, WEDNESDAY_AFTERNOON)

    def test_unknown_timezone_falls_back(self):
        params = {"timezone": "Mars/Olympus", "timeSlots": [{"day": 3, "startTime": "14:00", "endTime": "15:00"}]}
        assert is_within_schedule(params, WEDNESDAY_AFTERNOON, default_timezone="UTC")

    def test_sunday_is_day_zero(self):
        sunday = datetime(2026, 3, 8, 12, 0, tzinfo=timezone.utc)
        params = {"timezone": "UTC", "time_slots": [{"day": 0, "start_time": "12:00", "end_time": "12:00"}]}
        assert is_within_schedule(params, sunday)


class TestTriggerMatches:
    def test_channel_allow_list(self, channel):
        assert is_channel_allowed({"channels": []}, channel)
        assert is_channel_allowed({"channels": ["chan-wa"]}, channel)
        assert not is_channel_allowed({"channels": ["chan-ig"]}, channel)

    def test_all_rules_must_pass(self, channel):
        flow = _flow()
        trigger = _trigger(flow, ("channel", {"channels": ["chan-wa"]}), ("schedule", BUSINESS_HOURS))
        assert trigger_matches(trigger, channel, WEDNESDAY_AFTERNOON)
        other = Channel(id="chan-ig", organization_id="org-1")
        assert not trigger_matches(trigger, other, WEDNESDAY_AFTERNOON)

    def test_inactive_trigger(self, channel):
        assert not trigger_matches(_trigger(_flow(), is_active=False), channel)

    def test_unpublished_flow(self, channel):
        assert not trigger_matches(_trigger(_flow(isPublished=False)), channel)

    def test_inactive_but_published_flow_still_starts(self, channel):
        assert trigger_matches(_trigger(_flow(isActive=False)), channel)


class TestCheckTriggers:
    async def test_first_match_in_order(self, store, ctx):
        closed, open_ = _flow("closed"), _flow("open")
        for flow in (closed, open_):
            await store.save_flow(flow)
        await store.save_trigger("org-1", FlowTrigger(flow_id="closed", conditions={"rules": [
            {"type": "channel", "params": {"channels": ["chan-ig"]}},
        ]}))
        await store.save_trigger("org-1", FlowTrigger(flow_id="open"))
        await store.save_trigger("org-1", FlowTrigger(flow_id="closed"))

        flow = await check_triggers(store, ctx, WEDNESDAY_AFTERNOON)
        assert flow.id == "open"

    async def test_none_matches(self, store, ctx):
        assert await check_triggers(store, ctx) is None

    async def test_returning_customer(self, store, ctx):
        await store.save_flow(_flow())
        await store.save_trigger("org-1", FlowTrigger(flow_id="flow-1"))
        ctx.is_first_contact = None
        await store.save_chat(Chat(id="chat-0", organization_id="org-1", customer_id="cust-1"))
        assert not await is_first_contact(store, ctx)
        assert await check_triggers(store, ctx) is None

    @pytest.mark.parametrize("explicit", [True, False])
    async def test_explicit_first_contact_flag(self, store, ctx, explicit):
        ctx.is_first_contact = explicit
        assert await is_first_contact(store, ctx) is explicit

    async def test_store_decides_when_unknown(self, store, ctx):
        ctx.is_first_contact = None
        assert await is_first_contact(store, ctx)
