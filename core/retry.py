"""Async retry with exponential backoff for transient failures."""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T:
    """
    Await a coroutine factory with exponential backoff on transient errors.

    ``func`` is called again on every attempt so each retry starts from
    fresh reads.

    Args:
        func: Zero-argument callable returning an awaitable.
        max_retries: Retries after the first attempt (0 = single attempt).
        initial_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay.
        backoff_factor: Multiplier applied to the delay after each retry.
        retryable_exceptions: Exception types that trigger a retry.
        description: Label used in log messages.

    Returns:
        Result of the first successful attempt.

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            logger.warning(
                f"Retry {attempt + 1}/{max_retries} for {description} after error: {e}. "
                f"Waiting {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * backoff_factor, max_delay)

    # Unreachable: the loop either returns or re-raises
    raise RuntimeError(f"{description} retry loop exited without a result")
