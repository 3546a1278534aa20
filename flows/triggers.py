"""
Trigger resolution — which flow, if any, starts for a customer with no
active session.

Only ``first_contact`` triggers exist today. Each trigger may carry rules:

    channel   {"channels": [channel ids]}            empty list allows all
    schedule  {"timezone": "America/Sao_Paulo",
               "timeSlots": [{"day": 1, "startTime": "08:00", "endTime": "18:00"}]}

``day`` counts from 0 = Sunday. Slot bounds are inclusive and compared as
"HH:MM" strings in the rule's timezone. A schedule without slots passes.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import pytz
import structlog

from database.store_base import BaseFlowStore
from models.flow import Flow, FlowTrigger
from models.schemas import Channel, ConversationContext

logger = structlog.get_logger()

FIRST_CONTACT = "first_contact"


def _rule(trigger: FlowTrigger, rule_type: str) -> Optional[dict[str, Any]]:
    for rule in trigger.conditions.rules:
        if rule.type == rule_type:
            return rule.params
    return None


def _zone(name: Optional[str], fallback: str = "UTC"):
    try:
        return pytz.timezone(name or fallback)
    except pytz.UnknownTimeZoneError:
        logger.warning("flow_trigger_unknown_timezone", timezone=name, fallback=fallback)
        return pytz.timezone(fallback)


def is_within_schedule(params: dict[str, Any], now: Optional[datetime] = None,
                       default_timezone: str = "UTC") -> bool:
    slots = params.get("timeSlots") or params.get("time_slots") or []
    if not slots:
        return True

    tz = _zone(params.get("timezone"), default_timezone)
    local = now.astimezone(tz) if now is not None else datetime.now(tz)
    day = (local.weekday() + 1) % 7          # Monday=0 → Sunday=0
    current = local.strftime("%H:%M")

    for slot in slots:
        slot_day = slot.get("day")
        if slot_day is None or int(slot_day) != day:
            continue
        start = slot.get("startTime") or slot.get("start_time") or "00:00"
        end = slot.get("endTime") or slot.get("end_time") or "23:59"
        if start <= current <= end:
            return True
    return False


def is_channel_allowed(params: dict[str, Any], channel: Channel) -> bool:
    channels = params.get("channels") or []
    return not channels or channel.id in channels


def trigger_matches(trigger: FlowTrigger, channel: Channel, now: Optional[datetime] = None,
                    default_timezone: str = "UTC") -> bool:
    if not trigger.is_active or trigger.type != FIRST_CONTACT:
        return False
    flow = trigger.flow
    if flow is None or not flow.is_published:
        return False

    channel_rule = _rule(trigger, "channel")
    if channel_rule is not None and not is_channel_allowed(channel_rule, channel):
        return False

    schedule_rule = _rule(trigger, "schedule")
    if schedule_rule is not None and not is_within_schedule(schedule_rule, now, default_timezone):
        return False
    return True


async def is_first_contact(store: BaseFlowStore, ctx: ConversationContext) -> bool:
    if ctx.is_first_contact is not None:
        return ctx.is_first_contact
    prior = await store.has_prior_contact(ctx.organization.id, ctx.customer.id,
                                          exclude_chat_id=ctx.chat.id)
    return not prior


async def check_triggers(store: BaseFlowStore, ctx: ConversationContext,
                         now: Optional[datetime] = None) -> Optional[Flow]:
    """The flow of the first matching trigger, in listed order, or None."""
    if not await is_first_contact(store, ctx):
        return None

    triggers = await store.list_triggers(ctx.organization.id, FIRST_CONTACT)
    for trigger in triggers:
        if trigger_matches(trigger, ctx.channel, now, ctx.organization.timezone):
            logger.info("flow_trigger_matched", trigger_id=trigger.id,
                        flow_id=trigger.flow_id, chat_id=ctx.chat.id)
            return trigger.flow

    logger.debug("flow_trigger_none_matched", organization_id=ctx.organization.id,
                 checked=len(triggers))
    return None
