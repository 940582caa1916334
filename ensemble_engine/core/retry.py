"""
Backoff policies and transient-failure retry.

``BackoffPolicy`` computes delays for scoring retries. ``retry_async`` wraps an
agent invocation in a tenacity loop for steps that declare ``retry``.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from ensemble_engine.core.exceptions import AgentExecutionError
from ensemble_engine.core.logging import get_logger

T = TypeVar("T")

logger = get_logger("retry")


class BackoffStrategy(str, Enum):
    """How the delay grows between attempts."""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass
class BackoffPolicy:
    """Calculates backoff delays in milliseconds."""

    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    initial_delay_ms: float = 1000
    max_delay_ms: float = 60000

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before the given retry.

        Args:
            attempt: One-indexed retry number.

        Returns:
            Delay in milliseconds, capped at ``max_delay_ms``.
        """
        attempt = max(attempt, 1)
        if self.strategy == BackoffStrategy.FIXED:
            delay = self.initial_delay_ms
        elif self.strategy == BackoffStrategy.LINEAR:
            delay = self.initial_delay_ms * attempt
        else:
            delay = self.initial_delay_ms * (2 ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay_ms))

    def get_delay_seconds(self, attempt: int) -> float:
        return self.get_delay(attempt) / 1000


class wait_backoff_policy(wait_base):
    """Tenacity wait strategy driven by a ``BackoffPolicy``."""

    def __init__(self, policy: BackoffPolicy):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.get_delay_seconds(retry_state.attempt_number)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        f"Retrying after attempt {retry_state.attempt_number}: {error}",
        extra={
            "extra_fields": {
                "event": "agent_retry",
                "attempt": retry_state.attempt_number,
                "error": str(error),
            }
        },
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    attempts: int,
    policy: BackoffPolicy,
    retry_on: tuple[type[BaseException], ...] = (AgentExecutionError,),
    on_retry: Callable[[RetryCallState], Any] | None = None,
) -> T:
    """
    Execute ``func`` with bounded retries on transient errors.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. After the last attempt the final error is re-raised.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_backoff_policy(policy),
        retry=retry_if_exception_type(retry_on),
        before_sleep=on_retry or _log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await func()
    return result
