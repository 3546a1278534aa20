"""
Debounced message intake.

Customers often send one thought as several short messages. Each inbound
message for a session is appended to the session's pending buffer and
(re)starts a per-session timer; when the timer fires, the buffered messages
are merged into one event and handed to the walker.

    message → append_pending_message → (re)schedule timer
    timer fires → take_pending_messages → merge → on_fire(session, event)

The buffer lives in the store, so a restart loses only the timers:
``recover_pending`` schedules them again. A timer detaches itself from the
registry before firing; a message arriving during the walk starts a new
timer instead of cancelling the walk. Walks on one session are serialized by
``session_lock``.
"""
from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from database.store_base import BaseFlowStore
from flows.errors import SessionNotFoundError
from models.flow import FlowSession
from models.schemas import InboundMessage
from utils.reporting import report_error

logger = structlog.get_logger()

DEFAULT_DEBOUNCE_MS = 10000

MERGE_LATEST = "latest"
MERGE_JOIN = "join"

OnFire = Callable[[FlowSession, InboundMessage], Awaitable[Any]]


def pending_record(event: InboundMessage, received_at: datetime) -> dict[str, Any]:
    return {
        "content": event.content,
        "type": event.type,
        "metadata": dict(event.metadata),
        "received_at": received_at.isoformat(),
    }


def merge_pending(pending: list[dict[str, Any]], mode: str = MERGE_LATEST) -> InboundMessage:
    """Collapse buffered messages into the single event the walker sees."""
    last = pending[-1]
    if mode != MERGE_JOIN or len(pending) == 1:
        return InboundMessage(
            content=last.get("content") or "",
            type=last.get("type") or "text",
            metadata=last.get("metadata") or {},
        )

    contents = [m.get("content") for m in pending if m.get("content")]
    return InboundMessage(
        content="\n".join(contents),
        type=last.get("type") or "text",
        metadata={**(last.get("metadata") or {}), "original_messages": pending},
    )


class Debouncer:
    """Per-session debounce timers keyed by (chat_id, session_id)."""

    def __init__(
        self,
        store: BaseFlowStore,
        on_fire: OnFire,
        merge_mode: str = MERGE_LATEST,
        default_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.store = store
        self._on_fire = on_fire
        self.merge_mode = merge_mode
        self.default_ms = default_ms
        self._tasks: dict[tuple[str, str], asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def submit(self, session: FlowSession, event: InboundMessage,
                     debounce_ms: Optional[int] = None) -> FlowSession:
        """Buffer ``event`` for ``session`` and restart its timer."""
        received_at = datetime.now(timezone.utc)
        updated = await self.store.append_pending_message(
            session.id, pending_record(event, received_at), received_at,
        )
        if updated is None:
            raise SessionNotFoundError("session vanished before buffering", session_id=session.id)

        delay_ms = debounce_ms if debounce_ms is not None else self.default_ms
        self.schedule(updated, delay_ms)
        logger.debug("flow_message_buffered", session_id=session.id,
                     pending=len(updated.message_history), delay_ms=delay_ms)
        return updated

    def schedule(self, session: FlowSession, delay_ms: int) -> None:
        key = (session.chat_id, session.id)
        previous = self._tasks.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.get_running_loop().create_task(
            self._fire_later(key, session, max(delay_ms, 0) / 1000),
            name=f"debounce:{session.id}",
        )
        self._tasks[key] = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _fire_later(self, key: tuple[str, str], session: FlowSession, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await self.flush(session.id)
        except Exception as e:
            report_error(e, "flow_debounce_walk", session_id=session.id,
                         organization_id=session.organization_id, chat_id=session.chat_id)

    async def flush(self, session_id: str) -> Optional[Any]:
        """Merge the buffer and walk now. Returns None when nothing was pending."""
        async with self.session_lock(session_id):
            pending = await self.store.take_pending_messages(session_id)
            if not pending:
                return None
            session = await self.store.get_session(session_id)
            if session is None or not session.is_active:
                logger.info("flow_debounce_session_gone", session_id=session_id,
                            dropped=len(pending))
                return None
            event = merge_pending(pending, self.merge_mode)
            logger.info("flow_debounce_fired", session_id=session_id,
                        merged=len(pending), mode=self.merge_mode)
            return await self._on_fire(session, event)

    async def recover_pending(self, delay_ms: Optional[int] = None) -> int:
        """Schedule timers for sessions whose buffers outlived the process."""
        sessions = await self.store.find_sessions_with_pending_messages()
        for session in sessions:
            self.schedule(session, delay_ms if delay_ms is not None else self.default_ms)
        if sessions:
            logger.info("flow_debounce_recovered", sessions=len(sessions))
        return len(sessions)

    def cancel(self, chat_id: str, session_id: str) -> bool:
        task = self._tasks.pop((chat_id, session_id), None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """Wait until every scheduled timer has fired and its walk finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._inflight)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("flow_debouncer_closed", cancelled=len(tasks))
