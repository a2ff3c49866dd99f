"""
Retry Utilities

Bounded retries with exponential backoff and random jitter for
the network and archive operations of the pipeline.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from .config import MAX_RETRIES, RETRY_BASE_DELAY, RETRY_JITTER

log = logging.getLogger("RouteFlux.Retry")


def backoff_delay(attempt: int, base_delay: float = RETRY_BASE_DELAY, jitter: float = RETRY_JITTER,
                  rng: Optional[random.Random] = None) -> float:
    """Delay before the attempt following `attempt` (1-based)."""
    rng = rng or random
    return base_delay * (2 ** (attempt - 1)) + rng.uniform(0, jitter)


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    operation_name: str,
    max_attempts: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_DELAY,
    jitter: float = RETRY_JITTER,
    rng: Optional[random.Random] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await `operation()` until it succeeds or `max_attempts` is exhausted.

    Args:
        operation: Zero-argument coroutine function, called once per attempt
        operation_name: Used in log messages
        max_attempts: Total number of attempts (not retries)
        base_delay: Delay after the first failure, doubled on every attempt
        jitter: Upper bound of the uniform random delay added to each wait
        rng: Random source for the jitter
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Whatever the first successful attempt returned

    Raises:
        The exception of the final attempt, unchanged
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    last_exception = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_exception = e
            if attempt < max_attempts:
                delay = backoff_delay(attempt, base_delay, jitter, rng)
                log.warning(
                    f"{operation_name} failed (attempt {attempt}/{max_attempts}): {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await sleep(delay)
            else:
                log.error(f"{operation_name} failed after {max_attempts} attempts: {e}")

    raise last_exception
