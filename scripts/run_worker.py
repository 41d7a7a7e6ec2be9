#!/usr/bin/env python3
"""
Email processing worker.

Usage:
    # Run the worker until Ctrl-C / SIGTERM:
    python scripts/run_worker.py

    # Enqueue one stored message (and wait for it when the queue is in-process):
    python scripts/run_worker.py --enqueue MESSAGE_ID --tenant acme --priority high

    # Queue counters:
    python scripts/run_worker.py --stats
"""
import argparse
import asyncio
import json
import os
import signal
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv  # noqa: E402
import structlog  # noqa: E402

logger = structlog.get_logger()


async def run(args):
    from config.settings import load_settings
    from core.bootstrap import build_pipeline

    settings = load_settings(args.config)
    pipeline = await build_pipeline(settings)
    scheduler = pipeline.scheduler

    try:
        if args.stats:
            stats = await scheduler.stats()
            print(json.dumps(stats.to_dict(), indent=2))
            return

        await scheduler.start()

        if args.enqueue:
            handle = await scheduler.enqueue_message(args.enqueue, args.tenant, priority=args.priority)
            print(f"enqueued job {handle.id} ({scheduler.mode})")
            if scheduler.mode != "redis":
                job = await handle.wait(timeout=args.timeout)
                print(json.dumps(job.to_dict(), indent=2, default=str))
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        logger.info("worker_running", mode=scheduler.mode, concurrency=settings.queue.concurrency)
        await stop.wait()
        logger.info("worker_stopping")
    finally:
        await pipeline.close()


def main():
    parser = argparse.ArgumentParser(description="Email processing worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--enqueue", metavar="MESSAGE_ID", help="Enqueue one message and exit")
    parser.add_argument("--tenant", default="default", help="Tenant of the enqueued message")
    parser.add_argument("--priority", default="normal", choices=["urgent", "high", "normal", "low"])
    parser.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for an enqueued job")
    parser.add_argument("--stats", action="store_true", help="Print queue stats and exit")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    load_dotenv()
    from scripts.log_config import configure_logging
    configure_logging(args.log_level)

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
