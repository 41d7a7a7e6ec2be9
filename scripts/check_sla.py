#!/usr/bin/env python3
"""
Review SLA sweep — run hourly from cron.

Usage:
    python scripts/check_sla.py
    python scripts/check_sla.py --tenant acme
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv  # noqa: E402


async def run_check(config_path: str = None, tenant_id: str = None) -> dict:
    from config.settings import load_settings
    from database.store_factory import create_store
    from review.sla import SLAMonitor

    settings = load_settings(config_path)
    store = await create_store(settings.database)
    try:
        report = await SLAMonitor(store, settings.review).run_check(tenant_id)
    finally:
        await store.close()
    return report.to_dict()


def main():
    parser = argparse.ArgumentParser(description="Review queue SLA check")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--tenant", default=None, help="Only check this tenant")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    load_dotenv()
    from scripts.log_config import configure_logging
    configure_logging(args.log_level)

    report = asyncio.run(run_check(args.config, args.tenant))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
