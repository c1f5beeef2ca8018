"""
Unit tests for the retry utilities.
"""

import pytest
from unittest.mock import AsyncMock

from clinisync.utils.retry import (
    RetryConfig,
    RetryExecutor,
    RetryExhaustedError,
    RetryStrategy,
    retry,
)


class TestCalculateDelay:
    """Tests for delay schedules."""

    def test_exponential_reconnect_schedule(self):
        """Test the 5s/10s/20s reconnection schedule."""
        executor = RetryExecutor(RetryConfig(base_delay=5, strategy=RetryStrategy.EXPONENTIAL))
        assert [executor.calculate_delay(n) for n in (1, 2, 3)] == [5, 10, 20]

    def test_linear_schedule(self):
        """Test base * attempt."""
        executor = RetryExecutor(RetryConfig(base_delay=5, strategy=RetryStrategy.LINEAR))
        assert [executor.calculate_delay(n) for n in (1, 2, 3)] == [5, 10, 15]

    def test_fixed(self):
        executor = RetryExecutor(RetryConfig(base_delay=2, strategy=RetryStrategy.FIXED))
        assert executor.calculate_delay(4) == 2

    def test_delay_capped(self):
        executor = RetryExecutor(RetryConfig(base_delay=100, max_delay=150))
        assert executor.calculate_delay(5) == 150

    def test_jitter_stays_in_range(self):
        executor = RetryExecutor(RetryConfig(
            base_delay=10, strategy=RetryStrategy.FIXED, jitter=True, jitter_range=0.1
        ))
        for _ in range(20):
            assert 9 <= executor.calculate_delay(1) <= 11

    def test_schedule_lists_pauses_between_attempts(self):
        """Test the initialization schedule: four attempts, three pauses."""
        executor = RetryExecutor(RetryConfig(max_attempts=4, base_delay=5, strategy=RetryStrategy.LINEAR))
        assert executor.schedule() == [5, 10, 15]


class TestRetryableExceptions:
    """Tests for exception classification."""

    def test_programming_errors_not_retried_by_default(self):
        executor = RetryExecutor(RetryConfig())
        assert executor.is_retryable(ConnectionError("down"))
        assert not executor.is_retryable(ValueError("bad"))

    def test_explicit_lists(self):
        executor = RetryExecutor(RetryConfig(
            retryable_exceptions=[OSError],
            non_retryable_exceptions=[PermissionError],
        ))
        assert executor.is_retryable(ConnectionError())
        assert not executor.is_retryable(PermissionError())
        assert not executor.is_retryable(RuntimeError())


class TestAsyncExecute:
    """Tests for async execution."""

    @pytest.mark.asyncio
    async def test_uses_custom_sleep(self):
        """Test that the pause goes through the supplied sleep with the scheduled delay."""
        func = AsyncMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "done"])
        sleep = AsyncMock()
        on_retry = AsyncMock()
        executor = RetryExecutor(RetryConfig(max_attempts=4, base_delay=5, strategy=RetryStrategy.LINEAR))

        result = await executor.async_execute(func, on_retry=on_retry, sleep=sleep)

        assert result == "done"
        assert [c.args[0] for c in sleep.await_args_list] == [5, 10]
        assert [c.args[0] for c in on_retry.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_exhausted(self):
        func = AsyncMock(side_effect=ConnectionError("down"))
        executor = RetryExecutor(RetryConfig(max_attempts=2, base_delay=0))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.async_execute(func, "citas", sleep=AsyncMock())
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ConnectionError)
        func.assert_awaited_with("citas")

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=KeyError("missing"))
        executor = RetryExecutor(RetryConfig(max_attempts=5, base_delay=0))
        with pytest.raises(KeyError):
            await executor.async_execute(func)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_errors_propagate(self):
        """Test that a retry hook can abort the remaining attempts."""
        func = AsyncMock(side_effect=ConnectionError("down"))
        on_retry = AsyncMock(side_effect=RuntimeError("shutting down"))
        executor = RetryExecutor(RetryConfig(max_attempts=4, base_delay=0))
        with pytest.raises(RuntimeError, match="shutting down"):
            await executor.async_execute(func, on_retry=on_retry, sleep=AsyncMock())
        assert func.await_count == 1


class TestRetryDecorator:
    """Tests for the retry decorator."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        @retry(max_attempts=3, base_delay=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("again")
            return len(calls)

        assert await flaky() == 3
        assert flaky.retry_executor.config.label.endswith("flaky")

    @pytest.mark.asyncio
    async def test_exhausted(self):
        calls = []

        @retry(max_attempts=2, base_delay=0, label="reachability")
        async def always_down():
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(RetryExhaustedError):
            await always_down()
        assert len(calls) == 2
        assert always_down.retry_executor.config.label == "reachability"

    def test_rejects_plain_functions(self):
        with pytest.raises(TypeError):
            @retry()
            def blocking():
                return None
