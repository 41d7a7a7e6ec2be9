"""
Job lifecycle events — typed payloads plus an observer bus.

Backends publish one event per lifecycle step; listeners subscribe through
JobScheduler.subscribe(). A listener that raises is logged and skipped so a
broken observer never stalls dispatch.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Event payloads
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class JobEvent:
    job_id: str
    payload: dict[str, Any]
    attempts: int
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class JobCompleted(JobEvent):
    result: Any = None


@dataclass(frozen=True)
class JobFailed(JobEvent):
    error: str = ""


@dataclass(frozen=True)
class JobRetrying(JobEvent):
    error: str = ""
    delay_s: float = 0.0


@dataclass(frozen=True)
class JobProgress(JobEvent):
    percent: int = 0


# ──────────────────────────────────────────────────────────────
#  Observer interface
# ──────────────────────────────────────────────────────────────

class JobEventListener:
    """Override the hooks you care about; the rest are no-ops."""

    async def on_completed(self, event: JobCompleted) -> None:
        pass

    async def on_failed(self, event: JobFailed) -> None:
        pass

    async def on_retrying(self, event: JobRetrying) -> None:
        pass

    async def on_progress(self, event: JobProgress) -> None:
        pass


class LoggingJobListener(JobEventListener):
    """Default listener: one structured log line per terminal event."""

    async def on_completed(self, event: JobCompleted) -> None:
        logger.info("job_completed", job_id=event.job_id,
                    message_id=event.payload.get("message_id"),
                    attempts=event.attempts)

    async def on_failed(self, event: JobFailed) -> None:
        logger.error("job_failed", job_id=event.job_id,
                     message_id=event.payload.get("message_id"),
                     attempts=event.attempts, error=event.error)

    async def on_retrying(self, event: JobRetrying) -> None:
        logger.warning("job_retrying", job_id=event.job_id,
                       attempts=event.attempts, delay_s=event.delay_s,
                       error=event.error)


_DISPATCH = {
    JobCompleted: "on_completed",
    JobFailed: "on_failed",
    JobRetrying: "on_retrying",
    JobProgress: "on_progress",
}


class JobEventBus:
    """Fan-out of job events to registered listeners."""

    def __init__(self, listeners: Optional[list[JobEventListener]] = None):
        self._listeners: list[JobEventListener] = list(listeners or [])

    def subscribe(self, listener: JobEventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: JobEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, event: JobEvent) -> None:
        hook = _DISPATCH[type(event)]
        for listener in list(self._listeners):
            try:
                await getattr(listener, hook)(event)
            except Exception as e:
                logger.error("job_listener_error",
                             listener=type(listener).__name__,
                             job_id=event.job_id,
                             event=type(event).__name__,
                             error=str(e))
