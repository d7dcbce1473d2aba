"""
Error taxonomy for calls to unreliable external services.

Categories:
- network: connection refused/reset, DNS, offline
- timeout: an attempt exceeded its deadline
- upstream: the embedding or completion service reported a failure
- validation: malformed filters or tool payloads
- resource_exhaustion: circuit open, retries exhausted, outbox retries exhausted

describe_error() turns any exception into a StructuredError carrying the
message a user should see and the recovery actions that make sense.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

NETWORK = "network"
TIMEOUT = "timeout"
UPSTREAM = "upstream"
VALIDATION = "validation"
RESOURCE_EXHAUSTION = "resource_exhaustion"
UNKNOWN = "unknown"


class ResilienceError(Exception):
    """Base class for errors raised by the resilience layer."""

    category = UNKNOWN
    code = "SERVER_ERROR"


class OperationTimeoutError(ResilienceError):
    """An attempt did not finish within its per-attempt timeout."""

    category = TIMEOUT
    code = "OPERATION_TIMEOUT"

    def __init__(self, timeout: float, label: str = "operation"):
        self.timeout = timeout
        self.label = label
        super().__init__(f"{label} timed out after {timeout:g}s")


class CircuitOpenError(ResilienceError):
    """The circuit breaker rejected the call without invoking it."""

    category = RESOURCE_EXHAUSTION
    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit '{name}' is OPEN - too many recent failures "
            f"(retry in {self.retry_after:.1f}s)"
        )


class RetriesExhaustedError(ResilienceError):
    """Every attempt allowed by the retry policy failed."""

    category = RESOURCE_EXHAUSTION
    code = "RETRIES_EXHAUSTED"

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All {attempts} attempts failed{detail}")


class FallbackExhaustedError(ResilienceError):
    """No strategy in a fallback chain succeeded (or the chain was empty)."""

    category = RESOURCE_EXHAUSTION
    code = "FALLBACK_EXHAUSTED"


class OperationCancelledError(ResilienceError):
    """The caller aborted the operation through its cancel event."""

    category = UNKNOWN
    code = "OPERATION_CANCELLED"


class UpstreamServiceError(ResilienceError):
    """An external service (embeddings, completion, store) is failing."""

    category = UPSTREAM
    code = "UPSTREAM_ERROR"

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(f"{service} unavailable" + (f": {message}" if message else ""))


class InvalidInputError(ResilienceError, ValueError):
    """Malformed filters, parameters or tool payloads."""

    category = VALIDATION
    code = "INVALID_INPUT"


def is_transient_error(exc: BaseException) -> bool:
    """Check if an exception is a transient error worth retrying.

    Covers 503 Service Unavailable, 429 Rate Limit, timeouts and
    connection-level failures that are likely to resolve on their own.
    """
    if isinstance(exc, (OperationTimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (CircuitOpenError, InvalidInputError)):
        return False

    exc_type = type(exc).__name__
    for marker in ("ServiceUnavailable", "RateLimit", "Timeout", "ConnectError",
                   "APIConnectionError", "ConnectionError"):
        if marker in exc_type:
            return True

    exc_str = str(exc).lower()
    if "503" in exc_str or "service unavailable" in exc_str:
        return True
    if "429" in exc_str or "rate limit" in exc_str:
        return True
    if "connection refused" in exc_str or "connection reset" in exc_str:
        return True

    return False


@dataclass
class RecoveryAction:
    label: str
    action: str  # retry, refresh, wait, contact_support


@dataclass
class StructuredError:
    """User-facing description of a failure."""

    code: str
    category: str
    severity: str  # info, warning, error, critical
    message: str
    user_message: str
    technical_details: str = ""
    recovery_actions: list[RecoveryAction] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return any(a.action == "retry" for a in self.recovery_actions)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
            "user_message": self.user_message,
            "technical_details": self.technical_details,
            "recovery_actions": [
                {"label": a.label, "action": a.action} for a in self.recovery_actions
            ],
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


_RETRY = RecoveryAction("Retry", "retry")


def describe_error(exc: BaseException, context: dict[str, Any] | None = None) -> StructuredError:
    """Map an exception onto a StructuredError for display and diagnostics."""
    context = context or {}
    details = str(exc)

    if isinstance(exc, CircuitOpenError):
        return StructuredError(
            code=exc.code,
            category=exc.category,
            severity="warning",
            message="Service temporarily unavailable",
            user_message=(
                "This feature is temporarily unavailable. "
                f"Please try again in about {max(1, round(exc.retry_after))} seconds."
            ),
            technical_details=details,
            recovery_actions=[RecoveryAction("Wait and retry", "wait")],
            context={"circuit": exc.name, **context},
        )

    if isinstance(exc, InvalidInputError):
        return StructuredError(
            code=exc.code,
            category=VALIDATION,
            severity="warning",
            message="Invalid input",
            user_message="Some of the search parameters could not be understood.",
            technical_details=details,
            context=context,
        )

    if isinstance(exc, RetriesExhaustedError) and exc.last_error is not None:
        inner = describe_error(exc.last_error, context)
        inner.code = exc.code
        inner.technical_details = details
        return inner

    if isinstance(exc, (OperationTimeoutError, TimeoutError)):
        return StructuredError(
            code="NETWORK_TIMEOUT",
            category=TIMEOUT,
            severity="warning",
            message="Request timeout",
            user_message="The request took too long. Please try again with a simpler query.",
            technical_details=details,
            recovery_actions=[_RETRY],
            context=context,
        )

    if isinstance(exc, UpstreamServiceError):
        return StructuredError(
            code=exc.code,
            category=UPSTREAM,
            severity="error",
            message=f"{exc.service} unavailable",
            user_message="A service we depend on is having problems. Please try again.",
            technical_details=details,
            recovery_actions=[_RETRY],
            context=context,
        )

    lowered = details.lower()
    if isinstance(exc, ConnectionError) or "network" in lowered or "connect" in lowered:
        return StructuredError(
            code="NETWORK_ERROR",
            category=NETWORK,
            severity="error",
            message="Network error",
            user_message="Connection failed. Please check your internet and try again.",
            technical_details=details,
            recovery_actions=[_RETRY],
            context=context,
        )

    if "rate limit" in lowered or "too many requests" in lowered or "429" in lowered:
        return StructuredError(
            code="RATE_LIMIT_EXCEEDED",
            category=RESOURCE_EXHAUSTION,
            severity="warning",
            message="Rate limit exceeded",
            user_message="Too many requests. Please wait a moment before trying again.",
            technical_details=details,
            recovery_actions=[RecoveryAction("Wait 1 minute", "wait")],
            context=context,
        )

    return StructuredError(
        code=getattr(exc, "code", "SERVER_ERROR"),
        category=getattr(exc, "category", UNKNOWN),
        severity="error",
        message="Server error",
        user_message="An unexpected error occurred. Please try again.",
        technical_details=details,
        recovery_actions=[_RETRY],
        context=context,
    )
