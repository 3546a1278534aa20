"""
Store Factory — build the flow store named by ``database.store_backend``.

  memory  dicts in this process; nothing survives a restart
  file    JSON files under ``database.store_file_dir``
  sql     SQLAlchemy async store on ``database.url``
"""
from __future__ import annotations

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseFlowStore

logger = structlog.get_logger()

BACKENDS = ("memory", "file", "sql")


def create_store(config: DatabaseConfig, debug: bool = False) -> BaseFlowStore:
    backend = config.store_backend
    if backend == "sql":
        from database.store import SqlFlowStore
        store = SqlFlowStore(config.url, echo=debug)
    elif backend == "file":
        from database.store_file import FileFlowStore
        store = FileFlowStore(data_dir=config.store_file_dir)
    elif backend == "memory":
        from database.store_memory import InMemoryFlowStore
        store = InMemoryFlowStore()
    else:
        raise ValueError(f"unknown store backend {backend!r}, expected one of {', '.join(BACKENDS)}")

    logger.info("store_created", backend=backend)
    return store
