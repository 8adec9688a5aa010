"""
Retry mechanisms with exponential backoff for handling transient failures.
"""

import asyncio
import logging
import random
from typing import Any, Callable
from dataclasses import dataclass

from ..utils.exceptions import GatewayError, GatewayRequestRejected

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    backoff_factor: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before the attempt following ``attempt`` (zero based)."""
        delay = min(
            self.base_delay * (self.exponential_base ** attempt) * self.backoff_factor,
            self.max_delay
        )

        # Add jitter to prevent thundering herd
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay


async def retry_async(
    func: Callable,
    config: RetryConfig,
    *args,
    retryable_exceptions: tuple = (Exception,),
    non_retryable_exceptions: tuple = (),
    **kwargs
) -> Any:
    """
    Retry an async function with exponential backoff.

    Args:
        func: The async function to retry
        config: Retry configuration
        retryable_exceptions: Exceptions that should trigger retries
        non_retryable_exceptions: Exceptions that should not trigger retries
        *args, **kwargs: Arguments to pass to the function

    Returns:
        The result of the function call

    Raises:
        The last exception if all retries are exhausted
    """
    last_exception = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info("Function %s succeeded on attempt %d", name, attempt + 1)

            return result

        except non_retryable_exceptions as e:
            logger.error("Non-retryable error in %s: %s", name, e)
            raise

        except retryable_exceptions as e:
            last_exception = e

            # Don't sleep after the last attempt
            if attempt == config.max_attempts - 1:
                break

            delay = config.delay_for(attempt)
            logger.warning(
                "Attempt %d failed for %s: %s. Retrying in %.2fs...",
                attempt + 1, name, e, delay
            )

            await asyncio.sleep(delay)

    # All retries exhausted
    logger.error("All %d attempts failed for %s", config.max_attempts, name)
    raise last_exception


async def retry_with_circuit_breaker(
    func: Callable,
    circuit_breaker,
    retry_config: RetryConfig,
    *args,
    **kwargs
) -> Any:
    """Combine retry logic with circuit breaker pattern."""

    async def wrapped_func():
        return await circuit_breaker.call(func, *args, **kwargs)

    wrapped_func.__name__ = getattr(func, "__name__", "gateway_call")

    return await retry_async(
        wrapped_func,
        retry_config,
        retryable_exceptions=(GatewayError,),
        non_retryable_exceptions=(GatewayRequestRejected, ValueError, TypeError)
    )
