#!/usr/bin/env python3
"""
Billing Scheduler Worker

Runs scheduler ticks: claims due billing schedules, charges them and sends
upcoming-charge reminders. Several workers may run against the same database;
leases keep each schedule period to a single charge.

Usage:
    # One tick then exit (for cron)
    python3 run_billing_tick.py --once

    # Loop forever, ticking every 60 seconds
    python3 run_billing_tick.py --interval 60
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from billing_engine.main import BillingEngine, engine_lifespan

logger = structlog.get_logger()


async def run_tick(engine: BillingEngine) -> None:
    """One scheduler pass plus reminders."""
    result = await engine.scheduler.tick()
    reminders = await engine.scheduler.send_reminders()
    logger.info(
        "billing_tick_completed",
        claimed=result.claimed,
        succeeded=result.succeeded,
        failed=result.failed,
        partial=result.partial,
        suspended=result.suspended,
        completed=result.completed,
        skipped=result.skipped,
        reminders=reminders,
    )


async def main() -> None:
    parser = argparse.ArgumentParser(description="Run billing scheduler ticks")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between ticks")
    parser.add_argument("--no-migrate", action="store_true", help="Skip schema migrations")
    args = parser.parse_args()

    async with engine_lifespan(migrate=not args.no_migrate, serve_metrics=not args.once) as engine:
        logger.info("billing_worker_started", worker_id=engine.scheduler.worker_id)
        while True:
            try:
                await run_tick(engine)
            except Exception as e:
                # Keep the worker alive; the next tick retries unfinished schedules
                logger.exception("billing_tick_failed", error=str(e))
                if args.once:
                    raise

            if args.once:
                break
            await asyncio.sleep(args.interval)


if __name__ == "__main__":
    asyncio.run(main())
