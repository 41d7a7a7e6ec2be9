"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Each table keeps the full pydantic record in a JSON `data` column and lifts
the fields we filter on into indexed scalar columns. The message table
carries a `version` counter for optimistic concurrency.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Inbound messages
# ──────────────────────────────────────────────────────────────

class InboundMessageRow(Base):
    __tablename__ = "inbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id_header: Mapped[str] = mapped_column(String(512), default="")
    processing_status: Mapped[str] = mapped_column(String(32), default="pending")
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_inbound_tenant_header", "tenant_id", "message_id_header"),
        Index("ix_inbound_status", "processing_status"),
    )


# ──────────────────────────────────────────────────────────────
#  Review items
# ──────────────────────────────────────────────────────────────

class ReviewItemRow(Base):
    __tablename__ = "review_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    assigned_to: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    due_by: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_review_message", "message_id"),
        Index("ix_review_tenant_status", "tenant_id", "status"),
        Index("ix_review_assignee", "assigned_to"),
    )


# ──────────────────────────────────────────────────────────────
#  Inventory
# ──────────────────────────────────────────────────────────────

class SupplierOfferRow(Base):
    __tablename__ = "supplier_offers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending_verification")
    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_offers_tenant_searchable", "tenant_id", "verified", "status"),
    )


class CatalogItineraryRow(Base):
    __tablename__ = "catalog_itineraries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="published")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_catalog_tenant_published", "tenant_id", "is_active", "status"),
    )
