"""Retry and backoff utilities for resilient operations.

This module provides exponential backoff retry functionality for async operations,
used around the content generator and (through `backoff_delay`) by the dispatch
worker's own attempt loop.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from cadence.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 300.0
    jitter: bool = False
    timeout: float | None = None
    retryable_exceptions: tuple[type[BaseException], ...] = field(
        default_factory=lambda: (Exception,)
    )


def backoff_delay(attempt: int, base: float, maximum: float | None = None) -> float:
    """Delay to wait after a failed attempt.

    Attempts are numbered from 1, so successive delays are 2, 4, 8... times base.

    Args:
        attempt: 1-based number of the attempt that just failed
        base: Base delay in seconds
        maximum: Optional cap in seconds

    Returns:
        Delay in seconds
    """
    delay = base * (2**attempt)
    if maximum is not None:
        delay = min(delay, maximum)
    return delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Execute async function with exponential backoff retry.

    Each retry waits for: min(backoff_base * 2^attempt, backoff_max) seconds,
    attempt being the 1-based number of the attempt that failed, with random
    jitter applied if enabled. When `timeout` is set each call is bounded by it
    and a timeout counts as an ordinary failure.

    Args:
        fn: Async function to execute (no arguments)
        config: Retry configuration, uses defaults if not provided
        operation_name: Name for logging purposes
        sleep: Delay primitive, replaceable in tests

    Returns:
        Result of fn()

    Raises:
        Exception: The last exception if all retries are exhausted

    Example:
        ```python
        config = RetryConfig(max_attempts=3, timeout=60)
        content = await retry_with_backoff(
            lambda: generator.generate(profile, 4, hints, "coaching"),
            config=config,
            operation_name="generate:coaching",
        )
        ```
    """
    config = config or RetryConfig()
    retryable = (*config.retryable_exceptions, TimeoutError)

    for attempt in range(1, config.max_attempts + 1):
        try:
            if config.timeout is not None:
                return await asyncio.wait_for(fn(), timeout=config.timeout)
            return await fn()
        except retryable as e:
            if attempt == config.max_attempts:
                logger.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=config.max_attempts,
                    error=str(e) or type(e).__name__,
                )
                raise

            delay = backoff_delay(attempt, config.backoff_base, config.backoff_max)
            if config.jitter:
                delay *= 0.5 + random.random()

            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e) or type(e).__name__,
            )
            await sleep(delay)

    raise RuntimeError("Unexpected state in retry_with_backoff")
