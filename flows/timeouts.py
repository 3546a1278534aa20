"""
Timeout Scanner — periodic re-entry for sessions parked past ``timeout_at``.

Runs as a background task inside the FastAPI lifespan, or one cycle at a
time through ``POST /flows/timeouts/check``.

Flow:
    store.find_timed_out_sessions(now) → engine.handle_session_timeout
    → timeout edge walked (or ``timeout_at`` cleared when there is none)
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

import structlog

from flows.engine import FlowEngine
from utils.reporting import report_error

logger = structlog.get_logger()


class TimeoutScanner:
    """
    Polls the store for timed-out sessions and resumes them.

    Configure the interval and batch size in settings:
        flow:
          timeout_scan_interval_s: 60
          timeout_scan_batch_size: 100
    """

    def __init__(self, engine: FlowEngine, interval_s: float = 60, batch_size: int = 100):
        self.engine = engine
        self.interval_s = interval_s
        self.batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the scan loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._scan_loop(), name="flow_timeout_scanner")
        logger.info("timeout_scanner_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("timeout_scanner_stopped")

    async def _scan_loop(self) -> None:
        while self._running:
            try:
                await self.scan_cycle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                report_error(e, "timeout_scan")

            await asyncio.sleep(self.interval_s)

    async def scan_cycle(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Resume every session due at ``now``.

        Returns counts: {"due": N, "resumed": N, "errors": N}
        """
        now = now or datetime.now(timezone.utc)
        stats = {"due": 0, "resumed": 0, "errors": 0}

        sessions = await self.engine.store.find_timed_out_sessions(now, limit=self.batch_size)
        stats["due"] = len(sessions)

        for session in sessions:
            try:
                await self.engine.handle_session_timeout(session)
                stats["resumed"] += 1
            except Exception as e:
                report_error(e, "flow_timeout", session_id=session.id,
                             node_id=session.current_node_id,
                             organization_id=session.organization_id)
                stats["errors"] += 1

        if stats["due"]:
            logger.info("timeout_scan_complete", **stats)
        return stats
