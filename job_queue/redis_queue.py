"""
RedisQueueBackend — durable queue shared by any number of worker processes.

Key layout (prefix = queue name):
  {name}:seq          INCR counter, arrival order
  {name}:job:{id}     job JSON
  {name}:waiting      ZSET  score = priority * 10^12 + seq  (BZPOPMIN = next job)
  {name}:delayed      ZSET  score = epoch seconds when the retry becomes ready
  {name}:active       HASH  job_id → worker name
  {name}:leases       ZSET  score = epoch seconds when the running job's lease lapses
  {name}:completed    ZSET  score = finish time (clean() trims by score)
  {name}:failed       ZSET  score = finish time
  {name}:paused       STRING, present while the queue is paused

BZPOPMIN hands each waiting job to exactly one worker; the promoter uses a
per-member ZREM so only one process moves a ready retry back to waiting.
A running job's lease is renewed by its worker; once it lapses the job
is taken back (requeued, or failed when out of attempts) by the promoter.
"""
from __future__ import annotations

import asyncio
import time
import uuid
import structlog
from typing import Any, Callable, Optional

from job_queue.message_queue import (
    BackoffPolicy, Job, JobHandle, JobStatus, QueueBackend, QueueStats, _utcnow,
)

logger = structlog.get_logger()

_PRIORITY_STRIDE = 10 ** 12


class RedisQueueBackend(QueueBackend):
    """
    Production queue backed by Redis sorted sets.

    - Waiting jobs pop in (priority, arrival) order via BZPOPMIN
    - Retries wait in a delayed sorted set until promoted
    - Pause is queue-wide: every worker stops taking new jobs
    - Jobs held by a dead worker are recovered once their lease lapses
    """

    mode = "redis"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        name: str = "email-processing",
        concurrency: int = 3,
        promote_interval_s: float = 1.0,
        block_timeout_s: float = 1.0,
        lease_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(concurrency)
        self._redis_url = redis_url
        self._name = name
        self._promote_interval = promote_interval_s
        self._block_timeout = block_timeout_s
        self._lease_s = lease_s
        self._clock = clock
        self._worker = f"worker_{uuid.uuid4().hex[:8]}"
        self._redis = None
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._slots: Optional[asyncio.Semaphore] = None

    def _key(self, suffix: str) -> str:
        return f"{self._name}:{suffix}"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url, queue=self._name)

    async def start(self):
        if self._running:
            return
        if self._handler is None:
            raise RuntimeError("register_handler() must be called before start()")
        self._running = True
        self._slots = asyncio.Semaphore(self._concurrency)
        self._tasks = [
            asyncio.create_task(self._dispatch_loop()),
            asyncio.create_task(self._promote_loop()),
        ]
        logger.info("redis_consumer_started", queue=self._name,
                    worker=self._worker, concurrency=self._concurrency)

    async def close(self):
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ── Producer side ─────────────────────────────────────────

    async def add(
        self,
        payload: dict[str, Any],
        priority: int = 3,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
    ) -> JobHandle:
        sequence = await self._redis.incr(self._key("seq"))
        job = Job(
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            backoff=backoff or BackoffPolicy(),
            sequence=sequence,
        )
        pipe = self._redis.pipeline()
        pipe.set(self._key(f"job:{job.id}"), job.to_json())
        pipe.zadd(self._key("waiting"), {job.id: self._score(job)})
        await pipe.execute()
        logger.info("job_added",
                    job_id=job.id,
                    queue=self._name,
                    priority=priority,
                    message_id=payload.get("message_id"))
        return JobHandle(job, self)

    @staticmethod
    def _score(job: Job) -> int:
        return job.priority * _PRIORITY_STRIDE + job.sequence

    async def get_job(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._key(f"job:{job_id}"))
        return Job.from_json(raw) if raw else None

    async def _save_job(self, job: Job):
        await self._redis.set(self._key(f"job:{job.id}"), job.to_json())

    # ── Control ───────────────────────────────────────────────

    async def pause(self):
        await self._redis.set(self._key("paused"), "1")
        logger.info("queue_paused", mode=self.mode, queue=self._name)

    async def resume(self):
        await self._redis.delete(self._key("paused"))
        logger.info("queue_resumed", mode=self.mode, queue=self._name)

    async def stats(self) -> QueueStats:
        pipe = self._redis.pipeline()
        pipe.zcard(self._key("waiting"))
        pipe.hlen(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        pipe.zcard(self._key("delayed"))
        waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueStats(
            waiting=waiting, active=active, completed=completed, failed=failed,
            delayed=delayed, total=waiting + active + completed + failed + delayed,
            mode=self.mode,
        )

    async def clean(self, grace_s: float, status: JobStatus = JobStatus.COMPLETED) -> int:
        key = self._key(status.value)
        cutoff = self._clock() - grace_s
        stale = await self._redis.zrangebyscore(key, "-inf", cutoff)
        if not stale:
            return 0
        pipe = self._redis.pipeline()
        for job_id in stale:
            pipe.delete(self._key(f"job:{job_id}"))
        pipe.zremrangebyscore(key, "-inf", cutoff)
        await pipe.execute()
        logger.info("queue_cleaned", mode=self.mode, status=status.value, removed=len(stale))
        return len(stale)

    # ── Consumer side ─────────────────────────────────────────

    async def _dispatch_loop(self):
        while self._running:
            await self._slots.acquire()
            try:
                if await self._redis.exists(self._key("paused")):
                    self._slots.release()
                    await asyncio.sleep(self._block_timeout)
                    continue
                popped = await self._redis.bzpopmin(self._key("waiting"), timeout=self._block_timeout)
                if not popped:
                    self._slots.release()
                    continue
                _, job_id, _ = popped
                job = await self.get_job(job_id)
                if job is None:
                    logger.warning("redis_job_missing", job_id=job_id)
                    self._slots.release()
                    continue
                await self._claim(job)
                task = asyncio.create_task(self._run(job))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            except asyncio.CancelledError:
                self._slots.release()
                break
            except Exception as e:
                self._slots.release()
                logger.error("redis_dispatch_error", queue=self._name, error=str(e))
                await asyncio.sleep(1)

    async def _claim(self, job: Job):
        pipe = self._redis.pipeline()
        pipe.hset(self._key("active"), job.id, self._worker)
        pipe.zadd(self._key("leases"), {job.id: self._clock() + self._lease_s})
        await pipe.execute()

    async def _heartbeat(self, job_id: str):
        while True:
            await asyncio.sleep(self._lease_s / 3)
            try:
                # xx: a lease already taken back by recover_stalled stays gone
                await self._redis.zadd(self._key("leases"), {job_id: self._clock() + self._lease_s}, xx=True)
            except Exception as e:
                logger.warning("lease_renew_failed", job_id=job_id, error=str(e))

    async def _run(self, job: Job):
        heartbeat = asyncio.create_task(self._heartbeat(job.id))
        try:
            delay = await self._execute(job)
            now = self._clock()
            pipe = self._redis.pipeline()
            pipe.set(self._key(f"job:{job.id}"), job.to_json())
            pipe.hdel(self._key("active"), job.id)
            pipe.zrem(self._key("leases"), job.id)
            if delay is not None:
                pipe.zadd(self._key("delayed"), {job.id: now + delay})
            else:
                pipe.zadd(self._key(job.status.value), {job.id: now})
            await pipe.execute()
            await self._announce(job, delay)
        except Exception as e:
            # lease lapses and recover_stalled takes the job back
            logger.error("redis_job_bookkeeping_error", job_id=job.id, error=str(e))
        finally:
            heartbeat.cancel()
            self._slots.release()

    async def recover_stalled(self) -> int:
        """Take back jobs whose worker stopped renewing the lease."""
        now = self._clock()
        expired = await self._redis.zrangebyscore(self._key("leases"), "-inf", now)
        recovered = 0
        for job_id in expired:
            if not await self._redis.zrem(self._key("leases"), job_id):
                continue  # another worker took it
            await self._redis.hdel(self._key("active"), job_id)
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.last_error = "stalled: worker lease expired"
            pipe = self._redis.pipeline()
            if job.attempts < job.max_attempts:
                job.status = JobStatus.RETRYING
                job.sequence = await self._redis.incr(self._key("seq"))
                pipe.set(self._key(f"job:{job.id}"), job.to_json())
                pipe.zadd(self._key("waiting"), {job.id: self._score(job)})
                retry_delay = 0.0
            else:
                job.status = JobStatus.FAILED
                job.finished_at = _utcnow().isoformat()
                pipe.set(self._key(f"job:{job.id}"), job.to_json())
                pipe.zadd(self._key("failed"), {job.id: now})
                retry_delay = None
            await pipe.execute()
            logger.warning("job_stalled",
                           job_id=job.id,
                           attempts=job.attempts,
                           max_attempts=job.max_attempts,
                           requeued=retry_delay is not None)
            await self._announce(job, retry_delay)
            recovered += 1
        if recovered:
            logger.info("stalled_jobs_recovered", queue=self._name, count=recovered)
        return recovered

    async def promote_delayed(self) -> int:
        """Move retries whose backoff has elapsed back into the waiting set."""
        ready = await self._redis.zrangebyscore(self._key("delayed"), "-inf", self._clock())
        promoted = 0
        for job_id in ready:
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue  # another worker took it
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.sequence = await self._redis.incr(self._key("seq"))
            pipe = self._redis.pipeline()
            pipe.set(self._key(f"job:{job.id}"), job.to_json())
            pipe.zadd(self._key("waiting"), {job.id: self._score(job)})
            await pipe.execute()
            promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", queue=self._name, count=promoted)
        return promoted

    async def _promote_loop(self):
        while self._running:
            try:
                await self.promote_delayed()
                await self.recover_stalled()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)
