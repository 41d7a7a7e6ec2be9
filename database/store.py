"""
SqlWorkflowStore — Portable SQL store for PostgreSQL, MySQL, SQLite.

Records are stored as JSON documents with indexed scalar columns for the
filters we run. Message updates are guarded twice: the per-message lock from
BaseWorkflowStore for writers in this process, and an
`UPDATE … WHERE version = :expected` check for writers in other processes.
A lost race raises ConcurrentUpdateError, which the scheduler retries.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update

from core.exceptions import ConcurrentUpdateError, MessageNotFoundError
from database.models import (
    CatalogItineraryRow, InboundMessageRow, ReviewItemRow, SupplierOfferRow,
)
from database.connection import WorkflowDatabase
from database.store_base import BaseWorkflowStore, MessageMutator
from models.schemas import (
    CatalogItinerary, InboundMessage, ReviewItem, ReviewStatus, SupplierOffer,
)

logger = structlog.get_logger()

_OPEN_REVIEW = [ReviewStatus.PENDING.value, ReviewStatus.IN_REVIEW.value, ReviewStatus.ESCALATED.value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _load(data: Any) -> dict[str, Any]:
    # SQLite may hand JSON back as text
    return json.loads(data) if isinstance(data, str) else data


class SqlWorkflowStore(BaseWorkflowStore):
    """
    Persistent workflow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, database: WorkflowDatabase):
        super().__init__()
        self._db = database

    async def close(self):
        await self._db.dispose()

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: InboundMessage) -> InboundMessage:
        async with self._db.transaction() as db:
            row = await db.get(InboundMessageRow, message.id)
            data = message.model_dump(mode="json")
            if row is None:
                db.add(InboundMessageRow(
                    id=message.id,
                    tenant_id=message.tenant_id,
                    message_id_header=message.message_id_header,
                    processing_status=message.processing_status.value,
                    version=message.version,
                    data=data,
                ))
            else:
                row.message_id_header = message.message_id_header
                row.processing_status = message.processing_status.value
                row.version = message.version
                row.data = data
        return message

    async def get_message(self, message_id: str) -> Optional[InboundMessage]:
        async with self._db.transaction() as db:
            row = await db.get(InboundMessageRow, message_id)
            return InboundMessage.model_validate(_load(row.data)) if row else None

    async def find_messages_by_header(self, tenant_id: str, message_id_header: str) -> list[InboundMessage]:
        if not message_id_header:
            return []
        async with self._db.transaction() as db:
            stmt = select(InboundMessageRow).where(
                InboundMessageRow.tenant_id == tenant_id,
                InboundMessageRow.message_id_header == message_id_header,
            )
            result = await db.execute(stmt)
            return [InboundMessage.model_validate(_load(r.data)) for r in result.scalars()]

    async def _update_message(self, message_id: str, mutate: MessageMutator) -> InboundMessage:
        async with self._db.transaction() as db:
            row = await db.get(InboundMessageRow, message_id)
            if row is None:
                raise MessageNotFoundError(message_id)
            expected = row.version
            message = InboundMessage.model_validate(_load(row.data))
            mutate(message)
            message.version = expected + 1
            message.updated_at = _utcnow()
            stmt = (
                update(InboundMessageRow)
                .where(InboundMessageRow.id == message_id, InboundMessageRow.version == expected)
                .values(
                    processing_status=message.processing_status.value,
                    version=message.version,
                    data=message.model_dump(mode="json"),
                    updated_at=message.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                logger.warning("message_update_conflict", message_id=message_id, expected_version=expected)
                raise ConcurrentUpdateError(
                    f"message '{message_id}' changed since version {expected}"
                )
        return message

    # ── Review items ──────────────────────────────────────

    async def save_review_item(self, item: ReviewItem) -> ReviewItem:
        async with self._db.transaction() as db:
            row = await db.get(ReviewItemRow, item.id)
            data = item.model_dump(mode="json")
            if row is None:
                db.add(ReviewItemRow(
                    id=item.id, tenant_id=item.tenant_id, message_id=item.message_id,
                    status=item.status.value, assigned_to=item.assigned_to,
                    due_by=item.due_by, data=data,
                ))
            else:
                row.status = item.status.value
                row.assigned_to = item.assigned_to
                row.due_by = item.due_by
                row.data = data
        return item

    async def get_review_item(self, item_id: str) -> Optional[ReviewItem]:
        async with self._db.transaction() as db:
            row = await db.get(ReviewItemRow, item_id)
            return ReviewItem.model_validate(_load(row.data)) if row else None

    async def find_open_review_item(self, message_id: str) -> Optional[ReviewItem]:
        async with self._db.transaction() as db:
            stmt = select(ReviewItemRow).where(
                ReviewItemRow.message_id == message_id,
                ReviewItemRow.status.in_(_OPEN_REVIEW),
            ).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return ReviewItem.model_validate(_load(row.data)) if row else None

    async def list_review_items(
        self,
        tenant_id: Optional[str] = None,
        statuses: Optional[list[ReviewStatus]] = None,
        assigned_to: Optional[str] = None,
        unassigned: bool = False,
    ) -> list[ReviewItem]:
        stmt = select(ReviewItemRow)
        if tenant_id:
            stmt = stmt.where(ReviewItemRow.tenant_id == tenant_id)
        if statuses:
            stmt = stmt.where(ReviewItemRow.status.in_([s.value for s in statuses]))
        if assigned_to:
            stmt = stmt.where(ReviewItemRow.assigned_to == assigned_to)
        if unassigned:
            stmt = stmt.where(ReviewItemRow.assigned_to.is_(None))
        async with self._db.transaction() as db:
            result = await db.execute(stmt.order_by(ReviewItemRow.due_by))
            return [ReviewItem.model_validate(_load(r.data)) for r in result.scalars()]

    # ── Inventory ─────────────────────────────────────────

    async def add_supplier_offers(self, offers: list[SupplierOffer]) -> list[SupplierOffer]:
        async with self._db.transaction() as db:
            for offer in offers:
                db.add(SupplierOfferRow(
                    id=offer.id, tenant_id=offer.tenant_id, status=offer.status,
                    verified=offer.verified, data=offer.model_dump(mode="json"),
                    created_at=offer.created_at,
                ))
        return offers

    async def list_supplier_offers(self, tenant_id: str, searchable_only: bool = True) -> list[SupplierOffer]:
        stmt = select(SupplierOfferRow).where(SupplierOfferRow.tenant_id == tenant_id)
        if searchable_only:
            stmt = stmt.where(SupplierOfferRow.verified.is_(True), SupplierOfferRow.status == "active")
        async with self._db.transaction() as db:
            result = await db.execute(stmt.order_by(SupplierOfferRow.created_at))
            return [SupplierOffer.model_validate(_load(r.data)) for r in result.scalars()]

    async def add_catalog_itineraries(self, itineraries: list[CatalogItinerary]) -> list[CatalogItinerary]:
        async with self._db.transaction() as db:
            for itinerary in itineraries:
                db.add(CatalogItineraryRow(
                    id=itinerary.id, tenant_id=itinerary.tenant_id, status=itinerary.status,
                    is_active=itinerary.is_active, data=itinerary.model_dump(mode="json"),
                    created_at=itinerary.created_at,
                ))
        return itineraries

    async def list_catalog_itineraries(self, tenant_id: str, published_only: bool = True) -> list[CatalogItinerary]:
        stmt = select(CatalogItineraryRow).where(CatalogItineraryRow.tenant_id == tenant_id)
        if published_only:
            stmt = stmt.where(CatalogItineraryRow.is_active.is_(True), CatalogItineraryRow.status == "published")
        async with self._db.transaction() as db:
            result = await db.execute(stmt.order_by(CatalogItineraryRow.created_at))
            return [CatalogItinerary.model_validate(_load(r.data)) for r in result.scalars()]
