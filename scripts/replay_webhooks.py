#!/usr/bin/env python3
"""
Webhook Replay

Re-dispatches stored webhook events whose handler failed (processed=false).
Events that fail again keep their last_error and stay queued.

Usage:
    python3 replay_webhooks.py --limit 50
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from billing_engine.exceptions import BillingError
from billing_engine.main import engine_lifespan

logger = structlog.get_logger()


async def main() -> None:
    parser = argparse.ArgumentParser(description="Replay unprocessed webhook events")
    parser.add_argument("--limit", type=int, default=100, help="Max events to replay")
    args = parser.parse_args()

    async with engine_lifespan(migrate=False, serve_metrics=False) as engine:
        pending = await engine.webhooks.list_unprocessed(limit=args.limit)
        logger.info("webhook_replay_started", pending=len(pending))

        applied = 0
        failed = 0
        for webhook_event_id in pending:
            try:
                await engine.webhooks.replay(webhook_event_id)
                applied += 1
            except BillingError as e:
                failed += 1
                logger.warning(
                    "webhook_replay_failed",
                    webhook_event_id=str(webhook_event_id),
                    error_code=e.code,
                    error=str(e),
                )

        logger.info("webhook_replay_completed", applied=applied, failed=failed)


if __name__ == "__main__":
    asyncio.run(main())
