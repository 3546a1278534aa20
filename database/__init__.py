"""
Database layer — persistence for flows, flow sessions and the chat records
they read and write.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(get_settings().database)
  await store.init()
  session = await store.find_active_session("cust-1", "chat-1")
"""
from database.models import (
    Base, ChannelRow, ChatRow, CustomerRow, FlowRow, FlowSessionRow,
    FlowTriggerRow, MessageRow, OrganizationRow, PromptRow,
)
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_file import FileFlowStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ChannelRow", "ChatRow", "CustomerRow", "FlowRow", "FlowSessionRow",
    "FlowTriggerRow", "MessageRow", "OrganizationRow", "PromptRow",
    # Store interface
    "BaseFlowStore",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore", "FileFlowStore",
    # Factory
    "create_store",
]
