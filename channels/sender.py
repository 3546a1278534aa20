"""
Outbound send capability used by node executors.

The interpreter never talks to a physical channel. It hands each outbound
message to a MessageSender:
  - StoreMessageSender — writes a pending system message to the chat log;
    the platform dispatcher picks it up and delivers it.
  - HttpMessageSender  — posts the message to a dispatch service and records
    it in the chat log.
"""
from __future__ import annotations

import abc
from typing import Any, Optional

import httpx
import structlog
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from config.settings import DispatchConfig, get_settings
from database.store_base import BaseFlowStore
from flows.errors import SendError
from models.flow import FlowSession
from models.schemas import (
    Attachment, ChatMessage, MessageDirection, SenderType,
)

logger = structlog.get_logger()


def build_message(
    session: FlowSession,
    content: Optional[str] = None,
    attachments: Optional[list[dict[str, Any]]] = None,
    metadata: Optional[dict[str, Any]] = None,
    status: str = "pending",
) -> ChatMessage:
    return ChatMessage(
        chat_id=session.chat_id,
        organization_id=session.organization_id,
        customer_id=session.customer_id,
        channel_id=session.channel_id,
        session_id=session.id,
        direction=MessageDirection.OUTBOUND,
        sender_type=SenderType.SYSTEM,
        content=content,
        attachments=[Attachment.model_validate(a) for a in (attachments or [])],
        metadata=metadata or {},
        status=status,
    )


class MessageSender(abc.ABC):
    """Queues one outbound message on behalf of a flow session."""

    @abc.abstractmethod
    async def send(
        self,
        session: FlowSession,
        content: Optional[str] = None,
        attachments: Optional[list[dict[str, Any]]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ChatMessage:
        ...

    async def close(self) -> None:
        pass


class StoreMessageSender(MessageSender):
    """Writes outbound messages to the store for the dispatcher to deliver."""

    def __init__(self, store: BaseFlowStore):
        self.store = store

    async def send(self, session, content=None, attachments=None, metadata=None) -> ChatMessage:
        message = build_message(session, content, attachments, metadata)
        await self.store.add_message(message)
        logger.info("flow_message_queued", session_id=session.id, chat_id=session.chat_id,
                    message_id=message.id, attachments=len(message.attachments))
        return message


class HttpMessageSender(MessageSender):
    """Posts outbound messages to a dispatch service."""

    def __init__(self, config: DispatchConfig = None, store: Optional[BaseFlowStore] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().dispatch
        self.store = store
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self._client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post("/messages", json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def send(self, session, content=None, attachments=None, metadata=None) -> ChatMessage:
        message = build_message(session, content, attachments, metadata, status="sent")
        try:
            await self._post(message.model_dump(mode="json"))
        except (RetryError, httpx.HTTPError) as e:
            raise SendError(f"dispatch failed: {e}", session_id=session.id) from e
        if self.store is not None:
            await self.store.add_message(message)
        logger.info("flow_message_dispatched", session_id=session.id,
                    chat_id=session.chat_id, message_id=message.id)
        return message

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


def create_sender(store: BaseFlowStore, config: DispatchConfig = None) -> MessageSender:
    config = config or get_settings().dispatch
    if config.sender == "http":
        return HttpMessageSender(config, store=store)
    return StoreMessageSender(store)
