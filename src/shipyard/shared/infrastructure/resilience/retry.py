"""
Retry Resilience Pattern.

Used for retryable stages. Backoff is either fixed or exponential, capped at
``max_delay``. Exceptions carrying ``non_retryable = True`` (an aborted
approval, a failed health check) end the loop immediately.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

FIXED = "fixed"
EXPONENTIAL = "exponential"

RetryHook = Callable[[int, Exception, float], None]


@dataclass
class RetryConfig:
    """How many times to try, and how long to wait in between."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff: str = EXPONENTIAL
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff not in (FIXED, EXPONENTIAL):
            raise ValueError(f"backoff must be '{FIXED}' or '{EXPONENTIAL}', got '{self.backoff}'")

    def compute_delay(self, attempt: int) -> float:
        """Delay before the retry that follows a failed ``attempt`` (1-based), without jitter."""
        if self.backoff == FIXED:
            return min(self.initial_delay, self.max_delay)
        return min(self.initial_delay * self.exponential_base ** (attempt - 1), self.max_delay)

    def sleep_for(self, attempt: int) -> float:
        delay = self.compute_delay(attempt)
        return delay * (0.5 + random.random()) if self.jitter else delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if getattr(error, "non_retryable", False):
            return False
        return isinstance(error, self.retryable_exceptions) and attempt < self.max_attempts


class RetryExhausted(Exception):
    """Every attempt failed with a retryable error. ``last_error`` is the final one."""

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")


async def with_retry_async(
    coro_factory: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    operation_name: str = "operation",
    on_retry: Optional[RetryHook] = None,
) -> Any:
    """
    Call ``coro_factory`` until it succeeds or the policy gives up.

    Args:
        coro_factory: Builds a fresh awaitable per attempt
        config: Retry policy (defaults to RetryConfig())
        operation_name: Name used in logs and in RetryExhausted
        on_retry: Called with (failed attempt, error, delay) before each wait

    Raises:
        RetryExhausted: the last allowed attempt failed with a retryable error
        Exception: a non-retryable error, re-raised unchanged
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        attempt += 1
        try:
            return await coro_factory()
        except Exception as e:
            if not config.should_retry(e, attempt):
                retryable = isinstance(e, config.retryable_exceptions) and not getattr(e, "non_retryable", False)
                if not retryable:
                    raise
                logger.error("retry_exhausted", operation=operation_name, attempts=attempt, error=str(e))
                raise RetryExhausted(operation_name, attempt, e) from e

            delay = config.sleep_for(attempt)
            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=f"{delay:.2f}s",
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)

