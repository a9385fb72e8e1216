"""
Delivery tick job.

Run with: python -m cadence.jobs.delivery
Options:
  --batch-size N      Rows per batch (default: config)
  --concurrency N     Concurrent deliveries per batch (default: config)

This job:
1. Walks the due-set of active coaching subscriptions
2. Generates, sends and claims one delivery per subscription
3. Defers failed or skipped weeks to the next slot
"""

import argparse
import asyncio

from cadence.core.logging import get_logger, setup_logging
from cadence.services.delivery import TickResult, run_delivery_tick
from cadence.services.metrics import flush_metrics

logger = get_logger(__name__)


async def main(batch_size: int | None = None, max_concurrency: int | None = None) -> TickResult:
    """Run one delivery tick."""
    setup_logging()
    logger.info("delivery_job_started")
    try:
        result = await run_delivery_tick(batch_size=batch_size, max_concurrency=max_concurrency)
    except Exception as e:
        logger.bind(error=str(e)).error("delivery_job_failed")
        raise
    logger.bind(**result.as_dict()).info("delivery_job_completed")
    await flush_metrics()
    return result


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one delivery tick")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per batch")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent deliveries")
    args = parser.parse_args()

    asyncio.run(main(batch_size=args.batch_size, max_concurrency=args.concurrency))
