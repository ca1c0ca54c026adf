#!/usr/bin/env python3
"""Run a sync worker process.

Usage:
    uv run python scripts/run_sync_worker.py
    uv run python scripts/run_sync_worker.py --once --tenant 6f1c... --batch-size 25

Connects to the database and Redis using DATABASE_URL / REDIS_URL from the
environment or .env file. Without --once the process polls until it
receives SIGINT or SIGTERM, finishing the batch in hand before exiting.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys

# Ensure project root is on sys.path so we can import src.crm_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(once: bool, tenant_id: str | None, batch_size: int | None) -> int:
    """Build the services and drive the worker runner."""
    import structlog

    from src.crm_sync.api.middleware.logging import configure_structlog
    from src.crm_sync.config import get_settings
    from src.crm_sync.core.database import close_db
    from src.crm_sync.core.monitoring import init_sentry
    from src.crm_sync.core.redis import close_redis, get_redis_pool
    from src.crm_sync.integrations.runner import SyncWorkerRunner
    from src.crm_sync.integrations.wiring import build_services

    settings = get_settings()
    configure_structlog()
    log = structlog.get_logger("run_sync_worker")

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    redis = get_redis_pool()
    services = build_services(settings, redis=redis)
    runner = SyncWorkerRunner(
        services.coordinator,
        services.worker,
        settings,
        redis=None if once else redis,
        tenant_id=tenant_id,
    )
    if batch_size is not None:
        runner.batch_size = batch_size

    try:
        if once:
            outcomes = await runner.run_once()
            for outcome in outcomes:
                line = f"{outcome.job_id}  {outcome.job_type.value:<13} {outcome.state.value}"
                if outcome.error:
                    line += f"  {outcome.error}"
                print(line)
            print(f"Processed {len(outcomes)} job(s)")
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, runner.stop)
            log.info("run_sync_worker.starting", tenant_id=tenant_id)
            await runner.run()
    finally:
        await close_redis()
        await close_db()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the CRM sync worker")
    parser.add_argument("--once", action="store_true", help="Claim and process a single batch, then exit")
    parser.add_argument("--tenant", default=None, help="Only claim jobs for this tenant id")
    parser.add_argument("--batch-size", type=int, default=None, help="Jobs claimed per batch (1-50)")
    args = parser.parse_args()

    if args.batch_size is not None and not 1 <= args.batch_size <= 50:
        parser.error("--batch-size must be between 1 and 50")

    sys.exit(asyncio.run(run(args.once, args.tenant, args.batch_size)))


if __name__ == "__main__":
    main()
