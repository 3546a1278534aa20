"""
FastAPI Application — HTTP surface of the flow interpreter.

Provides:
- Inbound message endpoint (called by the ingestion layer after webhook
  normalization)
- Operator-triggered flow start for a chat
- On-demand timeout scan (for deployments that run the scan from cron)
- Health check

The timeout scanner also runs in the background for the app's lifetime.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from channels.sender import create_sender
from config.settings import get_settings
from database.store_factory import create_store
from flows.engine import FlowEngine
from flows.errors import FlowDefinitionError, FlowError
from flows.timeouts import TimeoutScanner
from models.schemas import ConversationContext, InboundMessage
from utils.reporting import init_error_tracking, report_error

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
init_error_tracking(_settings_boot)

store = create_store(_settings_boot.database, debug=_settings_boot.debug)
engine = FlowEngine(store, create_sender(store, _settings_boot.dispatch), settings=_settings_boot)
timeout_scanner = TimeoutScanner(
    engine,
    interval_s=_settings_boot.flow.timeout_scan_interval_s,
    batch_size=_settings_boot.flow.timeout_scan_batch_size,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await store.init()
    recovered = await engine.recover_pending()
    await timeout_scanner.start()

    logger.info("flow_interpreter_started",
                store=type(store).__name__,
                recovered_buffers=recovered)
    yield

    await timeout_scanner.stop()
    await engine.close()
    await store.close()
    logger.info("flow_interpreter_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Flow Interpreter API",
    description="Conversation flow interpreter for multi-tenant messaging",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    content: str = ""
    type: str = "text"
    metadata: dict[str, Any] = {}
    is_first_contact: Optional[bool] = None


class StartFlowRequest(BaseModel):
    flow_id: str
    content: str = ""
    metadata: dict[str, Any] = {}


async def _load_context(org_id: str, chat_id: str,
                        is_first_contact: Optional[bool] = None) -> ConversationContext:
    organization = await store.get_organization(org_id)
    if not organization:
        raise HTTPException(404, "Organization not found")
    chat = await store.get_chat(chat_id)
    if not chat or chat.organization_id != org_id:
        raise HTTPException(404, "Chat not found")
    customer = await store.get_customer(chat.customer_id)
    if not customer:
        raise HTTPException(404, "Customer not found")
    channel = await store.get_channel(chat.channel_id)
    if not channel:
        raise HTTPException(404, "Channel not found")
    return ConversationContext(
        organization=organization, channel=channel, customer=customer,
        chat=chat, is_first_contact=is_first_contact,
    )


def _session_summary(session) -> dict[str, Any]:
    if session is None:
        return {"status": "ignored", "session": None}
    return {
        "status": "buffered",
        "session": {
            "id": session.id,
            "flow_id": session.flow_id,
            "current_node_id": session.current_node_id,
            "pending_messages": len(session.message_history),
        },
    }


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(store).__name__,
        "pending_debounces": engine.debouncer.pending_count,
    }


# ══════════════════════════════════════════════════════════════
#  INBOUND MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/organizations/{org_id}/chats/{chat_id}/messages")
async def receive_message(org_id: str, chat_id: str, req: InboundMessageRequest):
    ctx = await _load_context(org_id, chat_id, req.is_first_contact)
    event = InboundMessage(content=req.content, type=req.type, metadata=req.metadata)
    try:
        session = await engine.process_message(ctx, event)
    except FlowDefinitionError as e:
        report_error(e, "process_message", organization_id=org_id, chat_id=chat_id)
        raise HTTPException(422, str(e))
    except FlowError as e:
        report_error(e, "process_message", organization_id=org_id, chat_id=chat_id)
        raise HTTPException(500, str(e))
    return _session_summary(session)


# ══════════════════════════════════════════════════════════════
#  FLOWS
# ══════════════════════════════════════════════════════════════

@app.post("/organizations/{org_id}/chats/{chat_id}/flows")
async def start_flow(org_id: str, chat_id: str, req: StartFlowRequest):
    ctx = await _load_context(org_id, chat_id)
    flow = await store.get_flow(req.flow_id)
    if not flow or flow.organization_id not in ("", org_id):
        raise HTTPException(404, "Flow not found")

    event = InboundMessage(content=req.content, metadata=req.metadata)
    try:
        session = await engine.process_message(ctx, event, flow=flow)
    except FlowError as e:
        report_error(e, "start_flow", organization_id=org_id, chat_id=chat_id)
        raise HTTPException(500, str(e))
    if session is None:
        raise HTTPException(422, "Flow has no entry node")
    return _session_summary(session)


@app.post("/flows/timeouts/check")
async def check_timeouts():
    return await timeout_scanner.scan_cycle()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
