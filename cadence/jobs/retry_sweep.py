"""
Retry sweep job.

Run with: python -m cadence.jobs.retry_sweep

Retries every delivery attempt recorded as retry_scheduled, once each.
"""

import asyncio

from cadence.core.logging import get_logger, setup_logging
from cadence.services.metrics import flush_metrics
from cadence.services.retry_sweeper import SweepResult, sweep_failed_deliveries

logger = get_logger(__name__)


async def main() -> SweepResult:
    """Run the retry sweep."""
    setup_logging()
    logger.info("retry_sweep_started")
    try:
        result = await sweep_failed_deliveries()
    except Exception as e:
        logger.bind(error=str(e)).error("retry_sweep_failed")
        raise
    await flush_metrics()
    return result


if __name__ == "__main__":
    asyncio.run(main())
