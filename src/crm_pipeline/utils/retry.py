"""Retry utilities with exponential backoff."""

import asyncio
import random
import logging
from typing import Awaitable, Callable, TypeVar

from ..config.settings import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: tuple = (Exception,),
    operation: str = "operation"
) -> T:
    """
    Await ``func()`` with exponential backoff retry logic.

    Args:
        func: Zero-argument coroutine function to execute
        max_attempts: Maximum number of attempts
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        exceptions: Tuple of exceptions to catch and retry on
        operation: Name used in log messages

    Returns:
        Result of the function call

    Raises:
        The last exception encountered if all retries fail
    """
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts:
                logger.error(f"{operation} failed after {max_attempts} attempts: {e}")
                raise

            if jitter:
                # ±25% of the delay
                jitter_range = delay * 0.25
                actual_delay = delay + random.uniform(-jitter_range, jitter_range)
            else:
                actual_delay = delay

            actual_delay = min(actual_delay, max_delay)

            logger.warning(
                f"{operation} attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {actual_delay:.2f} seconds..."
            )

            await asyncio.sleep(actual_delay)
            delay *= backoff_factor

    raise RuntimeError(f"{operation} was never attempted (max_attempts={max_attempts})")


async def retry_with_config(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    exceptions: tuple = (Exception,),
    operation: str = "operation"
) -> T:
    """Run ``func`` under the backoff policy described by a RetryConfig."""
    return await exponential_backoff(
        func,
        max_attempts=config.max_attempts,
        initial_delay=config.initial_backoff_seconds,
        max_delay=config.max_backoff_seconds,
        backoff_factor=config.backoff_multiplier,
        jitter=config.jitter,
        exceptions=exceptions,
        operation=operation
    )
