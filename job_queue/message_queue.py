"""
Queue Backends — one interface, three strategies chosen once at startup.

  RedisQueueBackend     durable, shared by any number of worker processes
                        (job_queue/redis_queue.py)
  InMemoryQueueBackend  priority list + bounded-concurrency dispatch loop,
                        lost on restart; the default
  SyncQueueBackend      no queueing: add() runs the handler inline and
                        returns once the job is terminal; last resort

Job Schema:
  {
      "id":           backend-assigned identifier,
      "payload":      {"message_id": ..., "tenant_id": ...},
      "priority":     1 (urgent) .. 4 (low), lower dispatches first,
      "attempts":     attempts made so far, never above max_attempts,
      "max_attempts": ceiling before the job is failed permanently,
      "backoff":      {"type": "exponential" | "fixed", "delay": seconds},
      "status":       waiting | active | completed | failed | retrying,
      "progress":     0-100, never decreases,
      "sequence":     arrival counter, breaks priority ties,
  }

Retry algorithm (shared by every backend):
  attempt fails → attempts < max_attempts → wait backoff.delay_for(attempts),
  re-enqueue with status "retrying"; otherwise status "failed" and a JobFailed
  event. Handler exceptions never escape a backend.
"""
from __future__ import annotations

import asyncio
import bisect
import itertools
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from config.settings import QueueConfig
from job_queue.events import (
    JobCompleted, JobEventBus, JobEventListener, JobFailed, JobProgress, JobRetrying,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, datetime):
        return obj.isoformat()
    return str(obj)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay between attempts. Exponential: delay * 2^(attempt-1)."""
    type: str = "exponential"
    delay: float = 5.0                  # seconds

    def delay_for(self, attempt: int) -> float:
        if self.type == "exponential":
            return self.delay * (2 ** (max(attempt, 1) - 1))
        return self.delay


@dataclass
class Job:
    """A unit of queued work. Mutated only by the backend that owns it."""
    payload: dict[str, Any]
    priority: int = 3
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempts: int = 0
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    sequence: int = 0
    last_error: str = ""
    result: Any = None
    id: str = ""
    created_at: str = ""
    finished_at: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"job_{uuid.uuid4().hex[:12]}"
        self.max_attempts = max(1, int(self.max_attempts))
        if not self.created_at:
            self.created_at = _utcnow().isoformat()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=_json_default)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        backoff = data.get("backoff") or {}
        if isinstance(backoff, dict):
            data["backoff"] = BackoffPolicy(**backoff)
        data["status"] = JobStatus(data.get("status", "waiting"))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> Job:
        return cls.from_dict(json.loads(raw))


class JobContext:
    """What a handler sees of its job: identity, payload, and a progress hook."""

    def __init__(self, job: Job, reporter: Callable[[int], Awaitable[None]]):
        self.job_id = job.id
        self.payload = dict(job.payload)
        self.attempt = job.attempts
        self.max_attempts = job.max_attempts
        self._reporter = reporter

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1

    async def report_progress(self, percent: int) -> None:
        await self._reporter(percent)


Handler = Callable[[JobContext], Awaitable[Any]]


class JobHandle:
    """
    Returned by add(). wait() resolves with the job once it is terminal,
    from a local future when this process owns the job, otherwise by polling.
    """

    def __init__(self, job: Job, backend: QueueBackend,
                 done: Optional[asyncio.Future] = None, poll_interval_s: float = 0.5):
        self.id = job.id
        self.payload = dict(job.payload)
        self._job = job
        self._backend = backend
        self._done = done
        self._poll_interval = poll_interval_s

    @property
    def status(self) -> JobStatus:
        return self._job.status

    async def wait(self, timeout: Optional[float] = None) -> Job:
        if self._done is not None:
            return await asyncio.wait_for(asyncio.shield(self._done), timeout)
        return await asyncio.wait_for(self._poll(), timeout)

    async def _poll(self) -> Job:
        while True:
            job = await self._backend.get_job(self.id)
            if job is not None:
                self._job = job
                if job.is_terminal:
                    return job
            await asyncio.sleep(self._poll_interval)

    def __repr__(self):
        return f"<JobHandle {self.id} {self.status.value}>"


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0
    mode: str = ""
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        if not d["error"]:
            d.pop("error")
        return d


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueBackend(ABC):
    """Abstract queue backend. Owns its jobs and their retry bookkeeping."""

    mode: str = ""

    def __init__(self, concurrency: int = 3):
        self._handler: Optional[Handler] = None
        self._concurrency = concurrency
        self.events = JobEventBus()

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Stop dispatch and release resources."""
        ...

    @abstractmethod
    async def add(
        self,
        payload: dict[str, Any],
        priority: int = 3,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> JobHandle:
        """Enqueue a job."""
        ...

    @abstractmethod
    async def pause(self):
        """Stop dispatching new jobs; active jobs run to completion."""
        ...

    @abstractmethod
    async def resume(self):
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def clean(self, grace_s: float, status: JobStatus = JobStatus.COMPLETED) -> int:
        """Drop finished jobs older than grace_s. Returns the number removed."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    def register_handler(self, handler: Handler, concurrency: Optional[int] = None):
        self._handler = handler
        if concurrency:
            self._concurrency = concurrency
        logger.info("queue_handler_registered", mode=self.mode,
                    concurrency=self._concurrency)

    async def start(self):
        """Begin dispatching. No-op for backends without a dispatch loop."""

    def subscribe(self, listener: JobEventListener):
        self.events.subscribe(listener)

    # ── Attempt execution ─────────────────────────────────────

    async def _execute(self, job: Job) -> Optional[float]:
        """
        Run one attempt. Returns the backoff delay when the job must be
        retried, None once it is terminal.
        """
        job.attempts += 1
        job.status = JobStatus.ACTIVE
        await self._save_job(job)
        ctx = JobContext(job, lambda percent: self._report_progress(job, percent))
        try:
            result = await self._handler(ctx)
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            if job.attempts < job.max_attempts:
                job.status = JobStatus.RETRYING
                delay = job.backoff.delay_for(job.attempts)
                logger.warning("job_attempt_failed",
                               job_id=job.id,
                               attempt=job.attempts,
                               max_attempts=job.max_attempts,
                               retry_in_s=delay,
                               error=job.last_error)
                return delay
            job.status = JobStatus.FAILED
            job.finished_at = _utcnow().isoformat()
            logger.error("job_attempts_exhausted",
                         job_id=job.id,
                         attempts=job.attempts,
                         error=job.last_error)
            return None

        job.status = JobStatus.COMPLETED
        job.result = result
        job.finished_at = _utcnow().isoformat()
        return None

    async def _report_progress(self, job: Job, percent: int):
        percent = max(0, min(100, int(percent)))
        if percent <= job.progress:
            return
        job.progress = percent
        await self._save_job(job)
        await self.events.emit(JobProgress(
            job_id=job.id, payload=job.payload, attempts=job.attempts, percent=percent,
        ))

    async def _save_job(self, job: Job):
        """Persist job fields after an in-flight change. Durable backends override."""

    async def _announce(self, job: Job, retry_delay: Optional[float]):
        """Emit the lifecycle event for the outcome of an attempt."""
        if retry_delay is not None:
            await self.events.emit(JobRetrying(
                job_id=job.id, payload=job.payload, attempts=job.attempts,
                error=job.last_error, delay_s=retry_delay,
            ))
        elif job.status == JobStatus.COMPLETED:
            await self.events.emit(JobCompleted(
                job_id=job.id, payload=job.payload, attempts=job.attempts, result=job.result,
            ))
        else:
            await self.events.emit(JobFailed(
                job_id=job.id, payload=job.payload, attempts=job.attempts, error=job.last_error,
            ))


def _older_than(job: Job, grace_s: float, now: datetime) -> bool:
    if not job.finished_at:
        return False
    finished = datetime.fromisoformat(job.finished_at)
    return finished < now - timedelta(seconds=grace_s)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

def _dispatch_order(job: Job) -> tuple[int, int]:
    return job.priority, job.sequence


class InMemoryQueueBackend(QueueBackend):
    """
    Single-process queue. The waiting list stays sorted by (priority,
    sequence) on every insertion, so a late urgent job overtakes earlier
    normal ones. The dispatch loop sleeps on a wakeup event; poll_interval_s
    bounds how long it sleeps without one (None → wakeups only).
    """

    mode = "memory"

    def __init__(self, concurrency: int = 3, poll_interval_s: Optional[float] = 0.1):
        super().__init__(concurrency)
        self._poll_interval = poll_interval_s
        self._jobs: dict[str, Job] = {}
        self._waiting: list[Job] = []
        self._active: dict[str, asyncio.Task] = {}
        self._delayed: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, asyncio.Future] = {}
        self._sequence = itertools.count(1)
        self._wakeup = asyncio.Event()
        self._paused = False
        self._running = False
        self._dispatch_task: Optional[asyncio.Task] = None

    async def connect(self):
        logger.info("inmemory_queue_connected",
                    concurrency=self._concurrency,
                    poll_interval_s=self._poll_interval)

    async def start(self):
        if self._running:
            return
        if self._handler is None:
            raise RuntimeError("register_handler() must be called before start()")
        self._running = True
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("inmemory_queue_started")

    async def close(self):
        self._running = False
        self._wakeup.set()
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        for task in self._delayed.values():
            task.cancel()
        self._delayed.clear()
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("inmemory_queue_closed")

    async def add(
        self,
        payload: dict[str, Any],
        priority: int = 3,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> JobHandle:
        job = Job(
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            backoff=backoff or BackoffPolicy(),
            sequence=next(self._sequence),
        )
        self._jobs[job.id] = job
        done = asyncio.get_running_loop().create_future()
        self._waiters[job.id] = done
        self._enqueue(job)
        logger.info("job_added",
                    job_id=job.id,
                    priority=priority,
                    message_id=payload.get("message_id"))
        return JobHandle(job, self, done)

    def _enqueue(self, job: Job):
        bisect.insort(self._waiting, job, key=_dispatch_order)
        self._wakeup.set()

    async def pause(self):
        self._paused = True
        logger.info("queue_paused", mode=self.mode, active=len(self._active))

    async def resume(self):
        self._paused = False
        self._wakeup.set()
        logger.info("queue_resumed", mode=self.mode)

    async def stats(self) -> QueueStats:
        completed = sum(1 for j in self._jobs.values() if j.status == JobStatus.COMPLETED)
        failed = sum(1 for j in self._jobs.values() if j.status == JobStatus.FAILED)
        waiting, active, delayed = len(self._waiting), len(self._active), len(self._delayed)
        return QueueStats(
            waiting=waiting, active=active, completed=completed, failed=failed,
            delayed=delayed, total=waiting + active + completed + failed + delayed,
            mode=self.mode,
        )

    async def clean(self, grace_s: float, status: JobStatus = JobStatus.COMPLETED) -> int:
        now = _utcnow()
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.status == status and _older_than(job, grace_s, now)
        ]
        for job_id in stale:
            del self._jobs[job_id]
        logger.info("queue_cleaned", mode=self.mode, status=status.value, removed=len(stale))
        return len(stale)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def join(self):
        """Wait until every job added so far has reached a terminal state."""
        while True:
            pending = [f for f in self._waiters.values() if not f.done()]
            if not pending:
                return
            await asyncio.gather(*pending)

    # ── Dispatch ──────────────────────────────────────────────

    async def _dispatch_loop(self):
        while self._running:
            self._wakeup.clear()
            self._fill_slots()
            try:
                if self._poll_interval is None:
                    await self._wakeup.wait()
                else:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue

    def _fill_slots(self):
        while not self._paused and self._waiting and len(self._active) < self._concurrency:
            job = self._waiting.pop(0)
            self._active[job.id] = asyncio.create_task(self._run(job))

    async def _run(self, job: Job):
        delay = await self._execute(job)
        self._active.pop(job.id, None)
        if delay is not None:
            self._delayed[job.id] = asyncio.create_task(self._retry_after(job, delay))
        await self._announce(job, delay)
        if job.is_terminal:
            waiter = self._waiters.pop(job.id, None)
            if waiter and not waiter.done():
                waiter.set_result(job)
        self._wakeup.set()

    async def _retry_after(self, job: Job, delay: float):
        await asyncio.sleep(delay)
        self._delayed.pop(job.id, None)
        job.sequence = next(self._sequence)
        self._enqueue(job)
        logger.info("job_requeued", job_id=job.id, attempts=job.attempts)


# ──────────────────────────────────────────────────────────────
#  Synchronous Implementation (last-resort fallback)
# ──────────────────────────────────────────────────────────────

class SyncQueueBackend(QueueBackend):
    """
    Zero-concurrency fallback. add() blocks the caller until the handler has
    succeeded or exhausted its attempts, sleeping through backoff inline.
    """

    mode = "synchronous"

    def __init__(self):
        super().__init__(concurrency=1)
        self._jobs: dict[str, Job] = {}
        self._sequence = itertools.count(1)

    async def connect(self):
        logger.warning("sync_queue_active",
                       detail="jobs run inline on the caller")

    async def close(self):
        pass

    async def add(
        self,
        payload: dict[str, Any],
        priority: int = 3,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> JobHandle:
        if self._handler is None:
            raise RuntimeError("register_handler() must be called before add()")
        job = Job(
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            backoff=backoff or BackoffPolicy(),
            sequence=next(self._sequence),
        )
        self._jobs[job.id] = job
        while True:
            delay = await self._execute(job)
            await self._announce(job, delay)
            if delay is None:
                break
            await asyncio.sleep(delay)

        done = asyncio.get_running_loop().create_future()
        done.set_result(job)
        return JobHandle(job, self, done)

    async def pause(self):
        logger.info("queue_pause_ignored", mode=self.mode)

    async def resume(self):
        logger.info("queue_resume_ignored", mode=self.mode)

    async def stats(self) -> QueueStats:
        completed = sum(1 for j in self._jobs.values() if j.status == JobStatus.COMPLETED)
        failed = sum(1 for j in self._jobs.values() if j.status == JobStatus.FAILED)
        return QueueStats(completed=completed, failed=failed,
                          total=completed + failed, mode=self.mode)

    async def clean(self, grace_s: float, status: JobStatus = JobStatus.COMPLETED) -> int:
        now = _utcnow()
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.status == status and _older_than(job, grace_s, now)
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[QueueBackend] = None


async def create_queue_backend(config: Optional[QueueConfig] = None) -> QueueBackend:
    """
    Factory: pick and connect the backend once.

      backend="redis"  → durable; if unreachable, memory (allow_memory_fallback)
                         or sync
      backend="memory" → in-process (default)
      backend="sync"   → inline execution
    """
    global _instance
    if _instance is not None:
        return _instance

    cfg = config or QueueConfig()
    backend = cfg.backend

    if backend == "redis":
        from job_queue.redis_queue import RedisQueueBackend
        candidate = RedisQueueBackend(
            redis_url=cfg.redis_url,
            name=cfg.name,
            concurrency=cfg.concurrency,
            promote_interval_s=cfg.delayed_promote_interval_s,
            lease_s=cfg.stalled_lease_s,
        )
        try:
            await candidate.connect()
        except Exception as e:
            backend = "memory" if cfg.allow_memory_fallback else "sync"
            logger.warning("redis_queue_unavailable",
                           url=cfg.redis_url,
                           fallback=backend,
                           error=str(e))
        else:
            _instance = candidate

    if _instance is None:
        if backend == "sync":
            _instance = SyncQueueBackend()
        else:
            if backend != "memory":
                logger.warning("unknown_queue_backend", backend=backend, using="memory")
            _instance = InMemoryQueueBackend(
                concurrency=cfg.concurrency,
                poll_interval_s=cfg.poll_interval_s,
            )
        await _instance.connect()

    logger.info("queue_backend_selected", mode=_instance.mode)
    return _instance


def get_queue_backend() -> QueueBackend:
    """Return the backend chosen at startup."""
    if _instance is None:
        raise RuntimeError("queue backend not created; await create_queue_backend() first")
    return _instance


def reset_queue_backend() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
