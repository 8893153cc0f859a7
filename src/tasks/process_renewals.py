"""
Subscription renewal sweep - one-shot entry point for external cron.

Can be invoked via:
  - Cron job: python -m src.tasks.process_renewals   (daily, 02:00 UTC)
  - Scheduler: the same sweep runs from src/services/scheduler.py inside the worker
"""
from __future__ import annotations

import asyncio
import logging
import sys

from src.logging_config import setup_logging
from src.services.scheduler import run_renewal_sweep

logger = logging.getLogger(__name__)


async def _main() -> int:
    """CLI entry point for cron jobs. Exit code 1 if any subscription failed unexpectedly."""
    setup_logging()
    summary = await run_renewal_sweep()
    print(summary.model_dump_json(indent=2))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))
