"""
Failed-payment retry sweep - one-shot entry point for external cron.

Can be invoked via:
  - Cron job: python -m src.tasks.retry_subscriptions   (daily, 10:00 UTC)
  - Stats only: python -m src.tasks.retry_subscriptions --stats
"""
from __future__ import annotations

import asyncio
import logging
import sys

from src.logging_config import setup_logging
from src.services.retries import RetryService
from src.services.scheduler import renewal_service, run_retry_sweep

logger = logging.getLogger(__name__)


async def _print_stats():
    async with renewal_service() as renewals:
        stats = await RetryService(renewals).get_retry_stats()
    print(stats.model_dump_json(indent=2))


async def _main() -> int:
    """CLI entry point for cron jobs."""
    setup_logging()

    if "--stats" in sys.argv[1:]:
        await _print_stats()
        return 0

    summary = await run_retry_sweep()
    print(summary.model_dump_json(indent=2))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))
