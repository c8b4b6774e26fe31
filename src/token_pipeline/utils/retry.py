"""Retry utilities with exponential backoff."""

import asyncio
import random
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, 'transient', False))


def compute_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    backoff_factor: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``max_delay``."""
    delay = initial_delay * (backoff_factor ** attempt)
    if jitter:
        # Add jitter: ±25% of the delay
        jitter_range = delay * 0.25
        delay += random.uniform(-jitter_range, jitter_range)
    return max(0.0, min(delay, max_delay))


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    should_retry: Callable[[BaseException], bool] = _is_retryable,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Execute an async function with exponential backoff retry logic.

    Args:
        func: Async function to execute
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        backoff_factor: Multiplier for delay after each failure
        jitter: Whether to add random jitter to delays
        should_retry: Predicate deciding whether an exception is worth retrying.
            Defaults to the exception's ``transient`` attribute.
        on_retry: Called with (attempt, exception, delay) before each sleep

    Returns:
        Result of the function call

    Raises:
        The first non-retryable exception, or the last exception once retries
        are exhausted
    """
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not should_retry(e):
                raise

            if attempt >= max_retries:
                logger.error(f"Giving up after {attempt + 1} attempts: {e}")
                raise

            delay = compute_delay(attempt, initial_delay, max_delay, backoff_factor, jitter)

            # Honour server-provided Retry-After as a lower bound
            retry_after = getattr(e, 'retry_after', None)
            if retry_after:
                delay = max(delay, min(float(retry_after), max_delay))

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.2f} seconds..."
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)
            attempt += 1
