"""
Unit tests for backoff policies and transient retry.
"""
import pytest
from unittest.mock import AsyncMock, Mock

from ensemble_engine.core.exceptions import AgentExecutionError
from ensemble_engine.core.retry import BackoffPolicy, BackoffStrategy, retry_async, wait_backoff_policy


class TestBackoffPolicy:
    """Tests for backoff delay calculation."""

    def test_exponential(self):
        policy = BackoffPolicy(BackoffStrategy.EXPONENTIAL, initial_delay_ms=100, max_delay_ms=10000)
        assert [policy.get_delay(n) for n in (1, 2, 3, 4)] == [100, 200, 400, 800]

    def test_linear(self):
        policy = BackoffPolicy(BackoffStrategy.LINEAR, initial_delay_ms=100, max_delay_ms=10000)
        assert [policy.get_delay(n) for n in (1, 2, 3)] == [100, 200, 300]

    def test_fixed(self):
        policy = BackoffPolicy(BackoffStrategy.FIXED, initial_delay_ms=250)
        assert policy.get_delay(1) == policy.get_delay(5) == 250

    def test_capped_at_max(self):
        policy = BackoffPolicy(BackoffStrategy.EXPONENTIAL, initial_delay_ms=1000, max_delay_ms=3000)
        assert policy.get_delay(10) == 3000
        assert policy.get_delay_seconds(10) == 3.0

    def test_tenacity_wait_uses_attempt_number(self):
        wait = wait_backoff_policy(BackoffPolicy(BackoffStrategy.LINEAR, initial_delay_ms=500))
        state = Mock(attempt_number=2)
        assert wait(state) == 1.0


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        """Test retryable errors are retried until success."""
        func = AsyncMock(
            side_effect=[
                AgentExecutionError("a", "flaky"),
                AgentExecutionError("a", "flaky"),
                "done",
            ]
        )
        result = await retry_async(func, attempts=3, policy=BackoffPolicy(initial_delay_ms=0))
        assert result == "done"
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_reraises_after_exhaustion(self):
        func = AsyncMock(side_effect=AgentExecutionError("a", "down"))
        with pytest.raises(AgentExecutionError):
            await retry_async(func, attempts=2, policy=BackoffPolicy(initial_delay_ms=0))
        assert func.call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            await retry_async(func, attempts=5, policy=BackoffPolicy(initial_delay_ms=0))
        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        on_retry = Mock()
        func = AsyncMock(side_effect=[AgentExecutionError("a", "flaky"), 1])
        await retry_async(func, attempts=2, policy=BackoffPolicy(initial_delay_ms=0), on_retry=on_retry)
        on_retry.assert_called_once()
