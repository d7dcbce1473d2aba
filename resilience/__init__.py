"""
Resilience layer: retry, fallback, graceful degradation and circuit breaking
for every call the discovery core makes to an external service.

Usage:
    from resilience import CircuitBreaker, retry_with_backoff

    store_breaker = CircuitBreaker(threshold=5, open_duration=60, name="store")
    result = await retry_with_backoff(lambda: store_breaker.call(fetch), max_attempts=3)
    if not result.success:
        show(describe_error(result.error))
"""

from .circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker, CircuitBreakerState
from .errors import (
    CircuitOpenError,
    FallbackExhaustedError,
    InvalidInputError,
    OperationCancelledError,
    OperationTimeoutError,
    ResilienceError,
    RetriesExhaustedError,
    StructuredError,
    UpstreamServiceError,
    describe_error,
    is_transient_error,
)
from .retry import (
    RecoveryResult,
    backoff_delay,
    fallback_strategy,
    graceful_degradation,
    retry_with_backoff,
)

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerState",
    "CLOSED",
    "OPEN",
    "HALF_OPEN",
    # Strategies
    "RecoveryResult",
    "retry_with_backoff",
    "fallback_strategy",
    "graceful_degradation",
    "backoff_delay",
    # Errors
    "ResilienceError",
    "OperationTimeoutError",
    "CircuitOpenError",
    "RetriesExhaustedError",
    "FallbackExhaustedError",
    "OperationCancelledError",
    "UpstreamServiceError",
    "InvalidInputError",
    "StructuredError",
    "describe_error",
    "is_transient_error",
]
