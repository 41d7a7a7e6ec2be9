"""
Database layer — Multi-backend persistence for messages, review items and inventory.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = await create_store(settings.database)
  message = await store.update_message("m1", lambda m: setattr(m, "progress", 50))
"""
from database.models import (
    Base, InboundMessageRow, ReviewItemRow, SupplierOfferRow, CatalogItineraryRow,
)
from database.connection import WorkflowDatabase
from database.store_base import BaseWorkflowStore
from database.store import SqlWorkflowStore
from database.store_memory import InMemoryWorkflowStore
from database.store_file import FileWorkflowStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "InboundMessageRow", "ReviewItemRow", "SupplierOfferRow", "CatalogItineraryRow",
    # Engine
    "WorkflowDatabase",
    # Store interface
    "BaseWorkflowStore",
    # Store backends
    "SqlWorkflowStore", "InMemoryWorkflowStore", "FileWorkflowStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
