"""Timeout Resilience Pattern."""

import asyncio
import time
from typing import Any, Optional

from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class OperationTimeoutError(Exception):
    """
    Raised when a bounded operation (a stage attempt, a health probe) runs
    past its limit.

    Distinct from the built-in TimeoutError so retry policies can list it.
    """

    def __init__(self, operation: str, timeout_seconds: float, elapsed: Optional[float] = None):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        self.elapsed = elapsed if elapsed is not None else timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


async def with_timeout_async(
    coro,
    timeout_seconds: Optional[float],
    operation_name: str = "operation",
) -> Any:
    """
    Await ``coro``, cancelling it after ``timeout_seconds``.

    A missing or non-positive limit leaves the coroutine unbounded.
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return await coro

    started = time.monotonic()
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        elapsed = time.monotonic() - started
        logger.warning(
            "operation_timeout",
            operation=operation_name,
            timeout=timeout_seconds,
            elapsed=round(elapsed, 3),
        )
        raise OperationTimeoutError(operation_name, timeout_seconds, elapsed) from None

