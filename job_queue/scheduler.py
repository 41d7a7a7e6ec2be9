"""
JobScheduler — the one place the rest of the system talks to the queue.

Maps semantic priorities to backend priorities, fills in retry defaults from
configuration, and forwards lifecycle control to whichever backend the
factory picked at startup.

Usage:
    backend = await create_queue_backend(settings.queue)
    scheduler = JobScheduler(backend, settings.queue)
    scheduler.register_handler(orchestrator.handle_job)
    await scheduler.start()
    handle = await scheduler.enqueue_message("msg_1", "acme", priority="urgent")
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, asdict
from typing import Any, Optional, Union

from config.settings import QueueConfig
from job_queue.events import JobEventListener, LoggingJobListener
from job_queue.message_queue import (
    BackoffPolicy, Handler, JobHandle, JobStatus, QueueBackend, QueueStats,
)

logger = structlog.get_logger()

PRIORITY_MAP = {"urgent": 1, "high": 2, "normal": 3, "low": 4}
DEFAULT_PRIORITY = PRIORITY_MAP["normal"]


@dataclass
class JobPayload:
    message_id: str
    tenant_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class JobOptions:
    priority: str = "normal"
    max_attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None


def priority_for(priority: Any) -> int:
    """Semantic priority → numeric priority; unknown values map to normal."""
    key = getattr(priority, "value", priority)
    return PRIORITY_MAP.get(str(key).lower(), DEFAULT_PRIORITY)


class JobScheduler:
    """Wraps a QueueBackend with priority mapping and retry defaults."""

    def __init__(self, backend: QueueBackend, config: Optional[QueueConfig] = None):
        self._backend = backend
        self._config = config or QueueConfig()
        self._backend.subscribe(LoggingJobListener())

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    @property
    def mode(self) -> str:
        return self._backend.mode

    def _default_backoff(self) -> BackoffPolicy:
        return BackoffPolicy(type=self._config.backoff_type, delay=self._config.backoff_delay_s)

    async def add(
        self,
        payload: Union[JobPayload, dict[str, Any]],
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        options = options or JobOptions()
        data = payload.to_dict() if isinstance(payload, JobPayload) else dict(payload)
        return await self._backend.add(
            data,
            priority=priority_for(options.priority),
            max_attempts=options.max_attempts or self._config.max_attempts,
            backoff=options.backoff or self._default_backoff(),
        )

    async def enqueue_message(self, message_id: str, tenant_id: str,
                              priority: str = "normal") -> JobHandle:
        return await self.add(
            JobPayload(message_id=message_id, tenant_id=tenant_id),
            JobOptions(priority=priority),
        )

    def register_handler(self, handler: Handler, concurrency: Optional[int] = None):
        self._backend.register_handler(handler, concurrency or self._config.concurrency)

    def subscribe(self, listener: JobEventListener):
        self._backend.subscribe(listener)

    async def start(self):
        await self._backend.start()

    async def stop(self):
        await self._backend.close()

    async def pause(self):
        await self._backend.pause()

    async def resume(self):
        await self._backend.resume()

    async def stats(self) -> QueueStats:
        try:
            return await self._backend.stats()
        except Exception as e:
            logger.error("queue_stats_failed", mode=self.mode, error=str(e))
            return QueueStats(mode=f"{self.mode} (disconnected)", error=str(e))

    async def clean(self, grace_s: Optional[float] = None) -> dict[str, int]:
        """Drop completed and failed jobs finished more than grace_s ago."""
        grace = self._config.clean_grace_s if grace_s is None else grace_s
        removed = {
            "completed": await self._backend.clean(grace, JobStatus.COMPLETED),
            "failed": await self._backend.clean(grace, JobStatus.FAILED),
        }
        logger.info("old_jobs_cleaned", grace_s=grace, **removed)
        return removed
