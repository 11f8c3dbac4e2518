"""
Retry mechanism for resilient startup operations.
"""

import asyncio
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


async def call_with_retry(func: Callable[..., Awaitable[Any]], *args,
                          exceptions: tuple = (Exception,),
                          config: Optional[RetryConfig] = None,
                          **kwargs) -> Any:
    """Await ``func`` until it succeeds or ``config.max_attempts`` is reached."""
    config = config or RetryConfig()
    logger = get_logger(f"retry.{func.__name__}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)

            if attempt > 1:
                logger.info(
                    "Retry succeeded",
                    attempt=attempt,
                    function=func.__name__
                )

            return result

        except exceptions as e:
            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    function=func.__name__,
                    error=str(e)
                )
                raise RetryError(
                    f"Function {func.__name__} failed after {config.max_attempts} attempts",
                    last_exception=e,
                    attempts=config.max_attempts
                ) from e

            delay = _calculate_delay(attempt, config)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=delay,
                function=func.__name__,
                error=str(e)
            )

            await asyncio.sleep(delay)

    raise RetryError(
        f"Function {func.__name__} was not attempted",
        last_exception=Exception("max_attempts < 1"),
        attempts=0
    )


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Linear back-off: the n-th failure waits n times the base delay."""
    return max(0.0, min(config.base_delay * attempt, config.max_delay))
