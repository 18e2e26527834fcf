"""Retry and timeout combinators composed explicitly at call sites."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from agentcore.clients.signals import AbortSignal
from agentcore.errors import ToolTimeoutError
from agentcore.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = False

    def get_delay(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based attempt."""
        delay = min(self.initial_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    should_retry: Callable[[Exception], bool] | None = None,
    retry_on_result: Callable[[T], bool] | None = None,
) -> T:
    """Run an async operation, retrying failures with backoff.

    Args:
        operation: Zero-argument factory producing a fresh awaitable per attempt
        policy: Backoff policy (defaults to three attempts)
        should_retry: Decides whether a raised exception is retryable; all are by default
        retry_on_result: Decides whether a returned value counts as a retryable failure

    Returns:
        The first accepted result, or the last result once attempts are exhausted
    """
    policy = policy or RetryPolicy()

    for attempt in range(policy.max_attempts):
        last_attempt = attempt == policy.max_attempts - 1
        try:
            result = await operation()
        except Exception as e:
            if last_attempt or (should_retry is not None and not should_retry(e)):
                raise
            delay = policy.get_delay(attempt)
            logger.debug(f"Attempt {attempt + 1}/{policy.max_attempts} failed ({e}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            continue

        if retry_on_result is None or last_attempt or not retry_on_result(result):
            return result

        delay = policy.get_delay(attempt)
        logger.debug(f"Attempt {attempt + 1}/{policy.max_attempts} returned a failure, retrying in {delay:.2f}s")
        await asyncio.sleep(delay)

    raise RuntimeError(f"Retry policy allows no attempts: {policy.max_attempts}")


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout: float,
    abort_signal: AbortSignal | None = None,
) -> T:
    """Run an async operation with a deadline.

    On expiry the awaited operation is cancelled and the abort signal, if any, is
    set. Code that blocks the event loop without awaiting cannot be interrupted.

    Raises:
        ToolTimeoutError: If the deadline passes first; a TimeoutError raised by the
            operation itself before the deadline propagates unchanged
    """
    deadline = asyncio.timeout(timeout)
    try:
        async with deadline:
            return await operation()
    except TimeoutError as e:
        if not deadline.expired():
            raise
        if abort_signal is not None:
            abort_signal.abort(f"timed out after {timeout}s")
        raise ToolTimeoutError(f"Operation timed out after {timeout}s", timeout=timeout) from e
