"""
Resilience Patterns for Shipyard.

Provides the fault-tolerance patterns used by stage execution:
- Timeout
- Retry (fixed or exponential backoff)
"""

from .retry import EXPONENTIAL, FIXED, RetryConfig, RetryExhausted, with_retry_async
from .timeout import OperationTimeoutError, with_timeout_async

__all__ = [
    "OperationTimeoutError",
    "with_timeout_async",
    "FIXED",
    "EXPONENTIAL",
    "RetryConfig",
    "RetryExhausted",
    "with_retry_async",
]
