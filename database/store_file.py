"""
FileWorkflowStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    messages.json
    review_items.json
    supplier_offers.json
    catalog_itineraries.json

Features:
  - Survives process restarts (unlike InMemoryWorkflowStore)
  - No external dependencies (no database server, no Redis)
  - Writes flush the changed collection, optionally debounced
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_base import MessageMutator
from database.store_memory import InMemoryWorkflowStore
from models.schemas import CatalogItinerary, InboundMessage, ReviewItem, SupplierOffer

logger = structlog.get_logger()

_COLLECTIONS = {
    "messages": "_messages",
    "review_items": "_review_items",
    "supplier_offers": "_supplier_offers",
    "catalog_itineraries": "_catalog",
}


class FileWorkflowStore(InMemoryWorkflowStore):
    """
    Extends InMemoryWorkflowStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher write throughput, set flush_interval_s > 0 to batch writes.
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
        for collection, attr in _COLLECTIONS.items():
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            setattr(self, attr, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(getattr(self, attr)))

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data: Any = getattr(self, _COLLECTIONS[collection])
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    async def close(self):
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._dirty.clear()
        self.flush_all()

    # ── Override write methods to trigger persistence ──────

    async def save_message(self, message: InboundMessage) -> InboundMessage:
        result = await super().save_message(message)
        self._mark_dirty("messages")
        return result

    async def _update_message(self, message_id: str, mutate: MessageMutator) -> InboundMessage:
        result = await super()._update_message(message_id, mutate)
        self._mark_dirty("messages")
        return result

    async def save_review_item(self, item: ReviewItem) -> ReviewItem:
        result = await super().save_review_item(item)
        self._mark_dirty("review_items")
        return result

    async def add_supplier_offers(self, offers: list[SupplierOffer]) -> list[SupplierOffer]:
        result = await super().add_supplier_offers(offers)
        self._mark_dirty("supplier_offers")
        return result

    async def add_catalog_itineraries(self, itineraries: list[CatalogItinerary]) -> list[CatalogItinerary]:
        result = await super().add_catalog_itineraries(itineraries)
        self._mark_dirty("catalog_itineraries")
        return result
