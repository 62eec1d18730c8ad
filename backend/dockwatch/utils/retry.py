"""Retry utilities for handling transient remote failures."""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

from dockwatch.exceptions import TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, backoff_base: float = 1.0, backoff_max: float = 60.0) -> float:
    """Exponential delay for a 1-based attempt number: base, 2*base, 4*base, ...

    Args:
        attempt: Attempt that just failed (1 = first attempt)
        backoff_base: Delay after the first failure (seconds)
        backoff_max: Upper bound for any single delay (seconds)

    Returns:
        Seconds to wait before the next attempt
    """
    return min(backoff_base * (2 ** (attempt - 1)), backoff_max)


def async_retry(
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 60.0,
    exceptions: tuple[type[Exception], ...] = (TransientRemoteError,),
    on_retry: Callable[[Exception, int], None] | None = None,
):
    """Decorator for retrying async functions with exponential backoff.

    Only the listed exception types are retried; anything else propagates on
    the first failure. Registry and Portainer clients perform one attempt per
    call, so callers that own a retry policy wrap them with this decorator.

    Args:
        max_attempts: Maximum number of attempts
        backoff_base: Delay after the first failure (seconds), doubled each retry
        backoff_max: Maximum backoff time (seconds)
        exceptions: Tuple of exception types to retry on
        on_retry: Optional callback function called on each retry

    Returns:
        Decorated function that retries on failure

    Example:
        @async_retry(max_attempts=3, exceptions=(TransientRemoteError,))
        async def fetch_manifest(client, ref):
            return await client.get_platform_specific_digest(ref, platform)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {str(e)}"
                        )
                        raise

                    backoff = backoff_delay(attempt, backoff_base, backoff_max)

                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {str(e)}. "
                        f"Retrying in {backoff:.1f}s..."
                    )

                    if on_retry:
                        on_retry(e, attempt)

                    await asyncio.sleep(backoff)

            raise RuntimeError(f"{func.__name__} called with max_attempts={max_attempts}")

        return wrapper

    return decorator
