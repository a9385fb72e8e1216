"""Tests for retry and backoff utilities."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from cadence.core.retry import RetryConfig, backoff_delay, retry_with_backoff

pytestmark = pytest.mark.asyncio


class TestBackoffDelay:
    async def test_doubles_per_attempt(self):
        assert [backoff_delay(n, 1.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    async def test_scales_with_base(self):
        assert backoff_delay(2, 0.5) == 2.0

    async def test_respects_maximum(self):
        assert backoff_delay(10, 1.0, maximum=300) == 300

    async def test_strictly_increasing(self):
        delays = [backoff_delay(n, 0.25) for n in range(1, 8)]
        assert all(a < b for a, b in zip(delays, delays[1:], strict=False))


class TestRetryWithBackoff:
    async def test_returns_first_success(self, recording_sleep):
        fn = AsyncMock(return_value="ok")

        result = await retry_with_backoff(fn, RetryConfig(max_attempts=3), sleep=recording_sleep)

        assert result == "ok"
        assert fn.await_count == 1
        assert recording_sleep.delays == []

    async def test_retries_then_succeeds(self, recording_sleep):
        fn = AsyncMock(side_effect=[ValueError("boom"), ValueError("boom"), "ok"])

        result = await retry_with_backoff(
            fn, RetryConfig(max_attempts=3, backoff_base=1.0), sleep=recording_sleep
        )

        assert result == "ok"
        assert recording_sleep.delays == [2.0, 4.0]

    async def test_raises_last_error_when_exhausted(self, recording_sleep):
        fn = AsyncMock(side_effect=[ValueError("one"), ValueError("two")])

        with pytest.raises(ValueError, match="two"):
            await retry_with_backoff(fn, RetryConfig(max_attempts=2), sleep=recording_sleep)

        assert len(recording_sleep.delays) == 1

    async def test_timeout_counts_as_failure(self, recording_sleep):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "fast"

        result = await retry_with_backoff(
            slow_then_fast,
            RetryConfig(max_attempts=2, timeout=0.01),
            sleep=recording_sleep,
        )

        assert result == "fast"
        assert calls == 2

    async def test_non_retryable_propagates_immediately(self, recording_sleep):
        fn = AsyncMock(side_effect=KeyError("nope"))
        config = RetryConfig(max_attempts=3, retryable_exceptions=(ValueError,))

        with pytest.raises(KeyError):
            await retry_with_backoff(fn, config, sleep=recording_sleep)

        assert fn.await_count == 1
