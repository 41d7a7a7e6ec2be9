"""
InMemoryWorkflowStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlWorkflowStore
  - Records kept as JSON-mode dicts, so callers never share a live model
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from core.exceptions import MessageNotFoundError
from database.store_base import BaseWorkflowStore, MessageMutator
from models.schemas import (
    CatalogItinerary, InboundMessage, ReviewItem, ReviewStatus, SupplierOffer,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json")


class InMemoryWorkflowStore(BaseWorkflowStore):
    """
    Full-featured in-memory store with the same interface as SqlWorkflowStore.
    """

    def __init__(self):
        super().__init__()
        self._messages: dict[str, dict] = {}            # id → message dict
        self._review_items: dict[str, dict] = {}        # id → review item dict
        self._supplier_offers: dict[str, dict] = {}     # id → offer dict
        self._catalog: dict[str, dict] = {}             # id → itinerary dict
        logger.info("inmemory_store_initialized")

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: InboundMessage) -> InboundMessage:
        self._messages[message.id] = _dump(message)
        return message

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        data = self._messages.get(message_id)
        return InboundMessage.model_validate(data) if data else None

    async def find_messages_by_header(self, tenant_id: str, message_id_header: str) -> list[InboundMessage]:
        if not message_id_header:
            return []
        return [
            InboundMessage.model_validate(m) for m in self._messages.values()
            if m["tenant_id"] == tenant_id and m.get("message_id_header") == message_id_header
        ]

    async def _update_message(self, message_id: str, mutate: MessageMutator) -> InboundMessage:
        data = self._messages.get(message_id)
        if data is None:
            raise MessageNotFoundError(message_id)
        message = InboundMessage.model_validate(data)
        mutate(message)
        message.version += 1
        message.updated_at = _utcnow()
        self._messages[message_id] = _dump(message)
        return message

    # ── Review items ──────────────────────────────────────

    async def save_review_item(self, item: ReviewItem) -> ReviewItem:
        self._review_items[item.id] = _dump(item)
        return item

    async def get_review_item(self, item_id: str) -> Optional[ReviewItem]:
        data = self._review_items.get(item_id)
        return ReviewItem.model_validate(data) if data else None

    async def find_open_review_item(self, message_id: str) -> Optional[ReviewItem]:
        for data in self._review_items.values():
            if data["message_id"] == message_id:
                item = ReviewItem.model_validate(data)
                if item.is_open:
                    return item
        return None

    async def list_review_items(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[list[ReviewStatus]] = None,
        assigned_to: Optional[str] = None,
        unassigned: bool = False,
    ) -> list[ReviewItem]:
        wanted = {s.value for s in statuses} if statuses else None
        items = []
        for data in self._review_items.values():
            if tenant_id and data["tenant_id"] != tenant_id:
                continue
            if wanted and data["status"] not in wanted:
                continue
            if assigned_to and data.get("assigned_to") != assigned_to:
                continue
            if unassigned and data.get("assigned_to"):
                continue
            items.append(ReviewItem.model_validate(data))
        return items

    # ── Inventory ─────────────────────────────────────────

    async def add_supplier_offers(self, offers: list[SupplierOffer]) -> list[SupplierOffer]:
        for offer in offers:
            self._supplier_offers[offer.id] = _dump(offer)
        return offers

    async def list_supplier_offers(self, tenant_id: str, searchable_only: bool = True) -> list[SupplierOffer]:
        offers = [
            SupplierOffer.model_validate(o) for o in self._supplier_offers.values()
            if o["tenant_id"] == tenant_id
        ]
        if searchable_only:
            offers = [o for o in offers if o.verified and o.status == "active"]
        return offers

    async def add_catalog_itineraries(self, itineraries: list[CatalogItinerary]) -> list[CatalogItinerary]:
        for itinerary in itineraries:
            self._catalog[itinerary.id] = _dump(itinerary)
        return itineraries

    async def list_catalog_itineraries(self, tenant_id: str, published_only: bool = True) -> list[CatalogItinerary]:
        items = [
            CatalogItinerary.model_validate(i) for i in self._catalog.values()
            if i["tenant_id"] == tenant_id
        ]
        if published_only:
            items = [i for i in items if i.is_active and i.status == "published"]
        return items
