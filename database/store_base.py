"""
Abstract Workflow Store — Interface for all storage backends.

Implementations:
  - SqlWorkflowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryWorkflowStore (dict-based, single-process, no persistence)
  - FileWorkflowStore     (JSON files on disk, single-process, durable)

Every read-modify-write of a message goes through update_message(), which
serializes callers per message id inside this process. The SQL store adds an
optimistic version check on top for writers in other processes.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from core.exceptions import ReviewItemNotFoundError
from models.schemas import (
    CatalogItinerary, InboundMessage, ReviewItem, ReviewStatus, SupplierOffer,
)

MessageMutator = Callable[[InboundMessage], Any]
ReviewItemMutator = Callable[[ReviewItem], Any]


class BaseWorkflowStore(ABC):
    """Interface that all workflow store backends must implement."""

    def __init__(self):
        self._locks: dict[str, list] = {}          # key → [asyncio.Lock, holders]

    async def close(self) -> None:
        """Release connections or flush buffered writes. No-op for the memory store."""

    @asynccontextmanager
    async def serialized(self, key: str) -> AsyncIterator[None]:
        """Mutual exclusion per key; the lock is dropped once nobody holds or awaits it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def save_message(self, message: InboundMessage) -> InboundMessage:
        """Insert or replace a message record."""
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        ...

    @abstractmethod
    async def find_messages_by_header(self, tenant_id: str, message_id_header: str) -> list[InboundMessage]:
        ...

    async def update_message(self, message_id: str, mutate: MessageMutator) -> InboundMessage:
        """
        Load → mutate → save under the per-message lock. The mutator edits the
        model in place; if it raises, nothing is written.
        """
        async with self.serialized(f"message:{message_id}"):
            return await self._update_message(message_id, mutate)

    @abstractmethod
    async def _update_message(self, message_id: str, mutate: MessageMutator) -> InboundMessage:
        ...

    # ── Review items ──────────────────────────────────────────

    @abstractmethod
    async def save_review_item(self, item: ReviewItem) -> ReviewItem:
        """Insert or replace a review item."""
        ...

    @abstractmethod
    async def get_review_item(self, item_id: str) -> Optional[ReviewItem]:
        ...

    async def update_review_item(self, item_id: str, mutate: ReviewItemMutator) -> ReviewItem:
        """Load → mutate → save under the per-item lock. Nothing is written if mutate raises."""
        async with self.serialized(f"review-item:{item_id}"):
            item = await self.get_review_item(item_id)
            if item is None:
                raise ReviewItemNotFoundError(item_id)
            mutate(item)
            return await self.save_review_item(item)

    @abstractmethod
    async def find_open_review_item(self, message_id: str) -> Optional[ReviewItem]:
        ...

    @abstractmethod
    async def list_review_items(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[list[ReviewStatus]] = None,
        assigned_to: Optional[str] = None,
        unassigned: bool = False,
    ) -> list[ReviewItem]:
        ...

    # ── Inventory ─────────────────────────────────────────────

    @abstractmethod
    async def add_supplier_offers(self, offers: list[SupplierOffer]) -> list[SupplierOffer]:
        ...

    @abstractmethod
    async def list_supplier_offers(self, tenant_id: str, searchable_only: bool = True) -> list[SupplierOffer]:
        """searchable_only → verified offers with status active."""
        ...

    @abstractmethod
    async def add_catalog_itineraries(self, itineraries: list[CatalogItinerary]) -> list[CatalogItinerary]:
        ...

    @abstractmethod
    async def list_catalog_itineraries(self, tenant_id: str, published_only: bool = True) -> list[CatalogItinerary]:
        ...
