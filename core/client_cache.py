"""
Per-tenant LLM client cache.

Tenants may bring their own API key, so each gets its own SDK client. The
cache is an explicit object handed to the engine (no module globals): entries
expire after ttl_s and the least recently used entry is evicted once
max_size is reached.
"""
from __future__ import annotations

import time
import structlog
from collections import OrderedDict
from typing import Any, Callable

logger = structlog.get_logger()


class TenantClientCache:

    def __init__(
        self,
        factory: Callable[[str], Any],
        ttl_s: float = 3600.0,
        max_size: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self._ttl_s = ttl_s
        self._max_size = max(1, max_size)
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()

    def get(self, tenant_id: str) -> Any:
        now = self._clock()
        entry = self._entries.get(tenant_id)
        if entry is not None:
            client, created_at = entry
            if now - created_at < self._ttl_s:
                self._entries.move_to_end(tenant_id)
                return client
            del self._entries[tenant_id]
            logger.debug("llm_client_expired", tenant_id=tenant_id)

        client = self._factory(tenant_id)
        self._entries[tenant_id] = (client, now)
        while len(self._entries) > self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("llm_client_evicted", tenant_id=evicted)
        return client

    def invalidate(self, tenant_id: str) -> bool:
        return self._entries.pop(tenant_id, None) is not None

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tenant_id: str) -> bool:
        return tenant_id in self._entries
