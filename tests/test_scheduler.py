"""
Tests for JobScheduler — priority mapping, retry defaults, stats degradation.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest


class TestPriorityMapping:
    def test_priority_map(self):
        from job_queue.scheduler import PRIORITY_MAP
        assert PRIORITY_MAP == {"urgent": 1, "high": 2, "normal": 3, "low": 4}

    def test_unknown_priority_maps_to_normal(self):
        from job_queue.scheduler import priority_for
        assert priority_for("whenever") == 3
        assert priority_for(None) == 3

    def test_enum_and_case_insensitive(self):
        from job_queue.scheduler import priority_for
        from models.schemas import JobPriority
        assert priority_for(JobPriority.URGENT) == 1
        assert priority_for("HIGH") == 2


class TestJobScheduler:
    @pytest.fixture
    def backend(self):
        from job_queue.message_queue import InMemoryQueueBackend
        return InMemoryQueueBackend(concurrency=1, poll_interval_s=None)

    @pytest.mark.asyncio
    async def test_enqueue_message_maps_priority_and_defaults(self, backend):
        from config.settings import QueueConfig
        from job_queue.scheduler import JobScheduler

        scheduler = JobScheduler(backend, QueueConfig(max_attempts=5, backoff_type="fixed", backoff_delay_s=2))
        handle = await scheduler.enqueue_message("msg_1", "acme", priority="urgent")
        job = await backend.get_job(handle.id)

        assert job.priority == 1
        assert job.max_attempts == 5
        assert job.backoff.type == "fixed"
        assert job.backoff.delay == 2
        assert job.payload == {"message_id": "msg_1", "tenant_id": "acme"}

    @pytest.mark.asyncio
    async def test_explicit_options_override_defaults(self, backend):
        from job_queue.message_queue import BackoffPolicy
        from job_queue.scheduler import JobOptions, JobPayload, JobScheduler

        scheduler = JobScheduler(backend)
        handle = await scheduler.add(
            JobPayload(message_id="m", tenant_id="t"),
            JobOptions(priority="low", max_attempts=1, backoff=BackoffPolicy(delay=9)),
        )
        job = await backend.get_job(handle.id)
        assert job.priority == 4
        assert job.max_attempts == 1
        assert job.backoff.delay == 9

    @pytest.mark.asyncio
    async def test_registered_handler_runs_jobs(self, backend):
        from job_queue.scheduler import JobScheduler

        scheduler = JobScheduler(backend)
        handler = AsyncMock(return_value={"status": "completed"})
        scheduler.register_handler(handler)
        await scheduler.start()
        handle = await scheduler.enqueue_message("msg_1", "acme")
        job = await handle.wait(timeout=2)
        await scheduler.stop()

        assert job.result == {"status": "completed"}
        ctx = handler.await_args.args[0]
        assert ctx.payload["message_id"] == "msg_1"

    @pytest.mark.asyncio
    async def test_stats_error_degrades(self):
        from job_queue.scheduler import JobScheduler

        backend = MagicMock()
        backend.mode = "redis"
        backend.stats = AsyncMock(side_effect=ConnectionError("connection reset"))
        scheduler = JobScheduler(backend)

        stats = await scheduler.stats()
        assert stats.mode == "redis (disconnected)"
        assert stats.total == 0
        assert "connection reset" in stats.to_dict()["error"]

    @pytest.mark.asyncio
    async def test_clean_reports_both_statuses(self, backend):
        from job_queue.scheduler import JobOptions, JobScheduler

        async def handler(ctx):
            if ctx.payload["message_id"] == "bad":
                raise ValueError("nope")

        scheduler = JobScheduler(backend)
        scheduler.register_handler(handler)
        await scheduler.start()
        await scheduler.add({"message_id": "ok", "tenant_id": "t"})
        await scheduler.add({"message_id": "bad", "tenant_id": "t"},
                            JobOptions(max_attempts=1))
        await asyncio.wait_for(backend.join(), timeout=2)

        removed = await scheduler.clean(grace_s=-1)
        await scheduler.stop()
        assert removed == {"completed": 1, "failed": 1}
