"""
Store Factory — Create the right workflow store backend from configuration.

Configuration in settings.yaml:
    database:
      url: "sqlite:///./travel_inbox.db"
      # "sql"    : database above (production)
      # "memory" : in-memory dicts (development, testing)
      # "file"   : JSON files on disk (small deployments, demos)
      store_backend: "memory"
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_store, get_store
    store = await create_store(settings.database)
    store = get_store()
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseWorkflowStore

logger = structlog.get_logger()

_instance: Optional[BaseWorkflowStore] = None


async def create_store(config: Optional[DatabaseConfig] = None) -> BaseWorkflowStore:
    """Factory: create the workflow store backend named by config.store_backend."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or DatabaseConfig()
    backend = config.store_backend

    if backend == "sql":
        from database.connection import WorkflowDatabase
        from database.store import SqlWorkflowStore
        database = WorkflowDatabase.from_config(config)
        await database.create_tables()
        _instance = SqlWorkflowStore(database)
        logger.info("store_created", backend="sql", dialect=database.dialect)

    elif backend == "file":
        from database.store_file import FileWorkflowStore
        _instance = FileWorkflowStore(data_dir=config.store_file_dir)
        logger.info("store_created", backend="file", data_dir=config.store_file_dir)

    else:  # "memory" or default
        from database.store_memory import InMemoryWorkflowStore
        _instance = InMemoryWorkflowStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseWorkflowStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        from database.store_memory import InMemoryWorkflowStore
        _instance = InMemoryWorkflowStore()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
