"""
FileFlowStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    organizations.json
    channels.json
    customers.json
    chats.json
    messages.json
    prompts.json
    flows.json
    triggers.json
    sessions.json

Features:
  - Survives process restarts (unlike InMemoryFlowStore), including
    parked sessions and pending debounce buffers
  - No external dependencies (no database server)
  - Writes flush on every mutation, or are batched with flush_interval_s
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryFlowStore
from flows.errors import PersistenceError
from models.flow import Flow, FlowSession, FlowTrigger
from models.schemas import Channel, Chat, ChatMessage, Customer, Organization, Prompt

logger = structlog.get_logger()

# collection → (attribute, model)
_COLLECTIONS: dict[str, tuple[str, type]] = {
    "organizations": ("_organizations", Organization),
    "channels": ("_channels", Channel),
    "customers": ("_customers", Customer),
    "chats": ("_chats", Chat),
    "prompts": ("_prompts", Prompt),
    "flows": ("_flows", Flow),
    "sessions": ("_sessions", FlowSession),
}
_LIST_COLLECTIONS: dict[str, tuple[str, type]] = {
    "messages": ("_messages", ChatMessage),
    "triggers": ("_triggers", FlowTrigger),
}


class FileFlowStore(InMemoryFlowStore):
    """
    Extends InMemoryFlowStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher performance, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in [*_COLLECTIONS, *_LIST_COLLECTIONS]:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                self._set_collection(collection, data)
                logger.debug("file_store_loaded", collection=collection,
                             records=len(data) if isinstance(data, dict) else "N/A")
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

        # Rebuild indexes
        self._active_index.clear()
        for session in self._sessions.values():
            if session.is_active:
                self._active_index[session.active_key] = session.id

    def _set_collection(self, collection: str, data: Any):
        """Restore a collection from loaded JSON data."""
        if not isinstance(data, dict):
            return
        if collection in _COLLECTIONS:
            attr, model = _COLLECTIONS[collection]
            setattr(self, attr, {k: model.model_validate(v) for k, v in data.items()})
        else:
            attr, model = _LIST_COLLECTIONS[collection]
            setattr(self, attr, defaultdict(list, {
                k: [model.model_validate(item) for item in items] for k, items in data.items()
            }))

    def _get_collection_data(self, collection: str) -> Any:
        """Get serializable data for a collection."""
        if collection in _COLLECTIONS:
            attr, _ = _COLLECTIONS[collection]
            return {k: v.model_dump(mode="json") for k, v in getattr(self, attr).items()}
        attr, _ = _LIST_COLLECTIONS[collection]
        return {
            k: [item.model_dump(mode="json", exclude={"flow"} if collection == "triggers" else None)
                for item in items]
            for k, items in getattr(self, attr).items()
        }

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._get_collection_data(collection)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2, default=str)
            tmp_path.rename(path)  # atomic on POSIX
        except OSError as e:
            raise PersistenceError(f"could not write {collection}: {e}") from e

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(
                    self._deferred_flush()
                )

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in [*_COLLECTIONS, *_LIST_COLLECTIONS]:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_organization(self, organization: Organization) -> Organization:
        result = await super().save_organization(organization)
        self._mark_dirty("organizations")
        return result

    async def save_channel(self, channel: Channel) -> Channel:
        result = await super().save_channel(channel)
        self._mark_dirty("channels")
        return result

    async def save_customer(self, customer: Customer) -> Customer:
        result = await super().save_customer(customer)
        self._mark_dirty("customers")
        return result

    async def update_customer(self, customer_id: str, **fields) -> Optional[Customer]:
        result = await super().update_customer(customer_id, **fields)
        self._mark_dirty("customers")
        return result

    async def save_chat(self, chat: Chat) -> Chat:
        result = await super().save_chat(chat)
        self._mark_dirty("chats")
        return result

    async def update_chat(self, chat_id: str, **fields) -> Optional[Chat]:
        result = await super().update_chat(chat_id, **fields)
        self._mark_dirty("chats")
        return result

    async def add_message(self, message: ChatMessage) -> ChatMessage:
        result = await super().add_message(message)
        self._mark_dirty("messages")
        return result

    async def save_prompt(self, prompt: Prompt) -> Prompt:
        result = await super().save_prompt(prompt)
        self._mark_dirty("prompts")
        return result

    async def save_flow(self, flow: Flow) -> Flow:
        result = await super().save_flow(flow)
        self._mark_dirty("flows")
        return result

    async def save_trigger(self, organization_id: str, trigger: FlowTrigger) -> FlowTrigger:
        result = await super().save_trigger(organization_id, trigger)
        self._mark_dirty("triggers")
        return result

    async def create_session_if_absent(self, session: FlowSession) -> tuple[FlowSession, bool]:
        result, created = await super().create_session_if_absent(session)
        if created:
            self._mark_dirty("sessions")
        return result, created

    async def save_session(self, session: FlowSession) -> FlowSession:
        result = await super().save_session(session)
        self._mark_dirty("sessions")
        return result

    async def append_pending_message(self, session_id: str, message: dict[str, Any],
                                     received_at: datetime) -> Optional[FlowSession]:
        result = await super().append_pending_message(session_id, message, received_at)
        self._mark_dirty("sessions")
        return result

    async def take_pending_messages(self, session_id: str) -> list[dict[str, Any]]:
        result = await super().take_pending_messages(session_id)
        self._mark_dirty("sessions")
        return result
