"""Tests for the retry executor."""

from unittest.mock import AsyncMock

import pytest

from dcaflow.core.errors import RetryExhausted
from dcaflow.core.retry import RetryExecutor


class TestRetryCall:
    """RetryExecutor.call behavior."""

    async def test_returns_first_success(self, no_sleep):
        operation = AsyncMock(return_value="ok")
        executor = RetryExecutor(sleep=no_sleep)

        assert await executor.call(operation, "SOL/USDC", limit=5) == "ok"
        operation.assert_awaited_once_with("SOL/USDC", limit=5)
        assert no_sleep.calls == []

    async def test_retries_until_success(self, no_sleep):
        operation = AsyncMock(side_effect=[ConnectionError("down"), "ok"])
        executor = RetryExecutor(sleep=no_sleep)

        assert await executor.call(operation) == "ok"
        assert operation.await_count == 2
        assert no_sleep.calls == [1]

    async def test_backoff_doubles_and_stops_after_last_attempt(self, no_sleep):
        operation = AsyncMock(side_effect=ConnectionError("down"))
        executor = RetryExecutor(max_attempts=4, sleep=no_sleep)

        with pytest.raises(RetryExhausted):
            await executor.call(operation)

        assert operation.await_count == 4
        # Waits 1s, 2s, 4s; nothing after the final attempt
        assert no_sleep.calls == [1, 2, 4]

    async def test_exhaustion_carries_last_error(self, no_sleep):
        errors = [ValueError("first"), ValueError("second"), ValueError("last")]
        operation = AsyncMock(side_effect=errors)
        executor = RetryExecutor(max_attempts=3, sleep=no_sleep)

        with pytest.raises(RetryExhausted) as exc_info:
            await executor.call(operation, name="get_ticker")

        error = exc_info.value
        assert error.operation == "get_ticker"
        assert error.attempts == 3
        assert error.last_error is errors[-1]
        assert error.__cause__ is errors[-1]
        assert "get_ticker failed after 3 attempts: last" in str(error)

    async def test_single_attempt_never_sleeps(self, no_sleep):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        executor = RetryExecutor(max_attempts=1, sleep=no_sleep)

        with pytest.raises(RetryExhausted):
            await executor.call(operation)
        assert no_sleep.calls == []

    async def test_base_delay_scales_waits(self, no_sleep):
        operation = AsyncMock(side_effect=RuntimeError("boom"))
        executor = RetryExecutor(max_attempts=3, base_delay=0.5, sleep=no_sleep)

        with pytest.raises(RetryExhausted):
            await executor.call(operation)
        assert no_sleep.calls == [0.5, 1.0]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryExecutor(max_attempts=0)


class TestFirstSuccess:
    """Ordered named fallback strategies."""

    async def test_first_strategy_wins(self, no_sleep):
        batch = AsyncMock(return_value="batch-done")
        fallback = AsyncMock(return_value="fallback-done")
        executor = RetryExecutor(sleep=no_sleep)

        result = await executor.first_success("cancel_all", [("batch", batch), ("each", fallback)])

        assert result == "batch-done"
        fallback.assert_not_awaited()

    async def test_falls_back_after_retries(self, no_sleep):
        batch = AsyncMock(side_effect=RuntimeError("unsupported"))
        fallback = AsyncMock(return_value="fallback-done")
        executor = RetryExecutor(max_attempts=2, sleep=no_sleep)

        result = await executor.first_success("cancel_all", [("batch", batch), ("each", fallback)])

        assert result == "fallback-done"
        assert batch.await_count == 2
        fallback.assert_awaited_once()

    async def test_raises_last_failure(self, no_sleep):
        first = AsyncMock(side_effect=RuntimeError("one"))
        second = AsyncMock(side_effect=RuntimeError("two"))
        executor = RetryExecutor(max_attempts=1, sleep=no_sleep)

        with pytest.raises(RetryExhausted) as exc_info:
            await executor.first_success("history", [("a", first), ("b", second)])

        assert exc_info.value.operation == "history:b"
        assert str(exc_info.value.last_error) == "two"

    async def test_requires_strategies(self, no_sleep):
        executor = RetryExecutor(sleep=no_sleep)
        with pytest.raises(ValueError):
            await executor.first_success("noop", [])
