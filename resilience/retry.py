"""
Recovery strategies for fallible async calls.

- retry_with_backoff: exponential backoff with a hard per-attempt timeout
- fallback_strategy: try increasingly simpler operations until one works
- graceful_degradation: accept partial data when the full call failed

Each strategy reports a RecoveryResult instead of raising, so the caller
decides whether an exhausted policy is fatal. Intermediate failures are
logged, never thrown.

Usage:
    result = await retry_with_backoff(
        lambda: embedder.aembed(query),
        max_attempts=3, base_delay=0.5, timeout=10,
    )
    vector = result.unwrap()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .errors import (
    FallbackExhaustedError,
    OperationCancelledError,
    OperationTimeoutError,
    RetriesExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


@dataclass
class RecoveryResult(Generic[T]):
    """Outcome of a recovery strategy."""

    success: bool
    data: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    strategy: str | None = None  # "retry", "fallback", "degraded" or None
    strategy_index: int | None = None  # which fallback worked

    @property
    def degraded(self) -> bool:
        return self.success and self.strategy == "degraded"

    def unwrap(self) -> T:
        """Return the data, or raise RetriesExhaustedError chained to the last error."""
        if self.success:
            return self.data
        raise RetriesExhaustedError(self.attempts, self.error) from self.error


def backoff_delay(attempt: int, base_delay: float, max_delay: float | None = None) -> float:
    """Delay after failed attempt number ``attempt`` (1-based): base * 2^(attempt-1)."""
    delay = base_delay * (2 ** max(0, attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


async def _wait(delay: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds. Returns False if cancelled while waiting."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False


async def retry_with_backoff(
    op: Operation[T],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    timeout: float | None = 15.0,
    retryable: Callable[[BaseException], bool] | None = None,
    cancel_event: asyncio.Event | None = None,
    emitter=None,
    label: str = "operation",
) -> RecoveryResult[T]:
    """
    Run ``op`` until it succeeds or the attempts run out.

    Args:
        op: Zero-argument callable returning an awaitable. Called once per attempt.
        max_attempts: Total attempts, including the first.
        base_delay: Seconds to wait after the first failure; doubles each time.
        max_delay: Upper bound for a single wait.
        timeout: Per-attempt deadline in seconds (None disables it).
            A timeout counts as a failed attempt.
        retryable: Predicate deciding whether an error is worth another
            attempt. Non-retryable errors end the loop immediately.
        cancel_event: When set, no further attempt starts and any pending
            backoff wait ends early.
        emitter: Optional EventEmitter receiving ``retry_attempt`` events.
        label: Name used in logs and events.

    Returns:
        RecoveryResult with success, data or error, and the attempts used.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    attempt = 0

    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            return RecoveryResult(
                success=False,
                error=OperationCancelledError(f"{label} cancelled before attempt {attempt}"),
                attempts=attempt - 1,
                strategy="retry",
            )

        started = time.monotonic()
        try:
            if timeout is None:
                data = await op()
            else:
                data = await asyncio.wait_for(op(), timeout=timeout)
            return RecoveryResult(
                success=True,
                data=data,
                attempts=attempt,
                strategy="retry" if attempt > 1 else None,
            )
        except asyncio.TimeoutError:
            last_error = OperationTimeoutError(timeout, label)
        except Exception as e:
            last_error = e

        logger.warning(
            "%s attempt %d/%d failed: %s", label, attempt, max_attempts, last_error
        )
        if emitter is not None:
            emitter.emit("retry_attempt", {
                "label": label,
                "attempt": attempt,
                "max_attempts": max_attempts,
                "error": str(last_error),
                "error_type": type(last_error).__name__,
                "duration_ms": int((time.monotonic() - started) * 1000),
            })

        if retryable is not None and not retryable(last_error):
            logger.debug("%s: %s is not retryable, giving up", label, type(last_error).__name__)
            break

        # No wait after the final attempt
        if attempt < max_attempts:
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug("%s: retrying in %.2fs", label, delay)
            if not await _wait(delay, cancel_event):
                return RecoveryResult(
                    success=False,
                    error=OperationCancelledError(f"{label} cancelled during backoff"),
                    attempts=attempt,
                    strategy="retry",
                )

    return RecoveryResult(
        success=False,
        error=last_error or RetriesExhaustedError(attempt),
        attempts=attempt,
        strategy="retry",
    )


async def fallback_strategy(ops: Sequence[Operation[T]], label: str = "fallback") -> RecoveryResult[T]:
    """
    Try each operation in order (most to least capable).

    Returns on the first success; ``strategy_index`` tells which one worked.
    """
    last_error: BaseException | None = None

    for i, op in enumerate(ops):
        try:
            data = await op()
            return RecoveryResult(
                success=True,
                data=data,
                attempts=i + 1,
                strategy="fallback" if i > 0 else None,
                strategy_index=i,
            )
        except Exception as e:
            last_error = e
            logger.warning("%s strategy %d/%d failed: %s", label, i + 1, len(ops), e)

    return RecoveryResult(
        success=False,
        error=last_error or FallbackExhaustedError("No fallback strategies given"),
        attempts=len(ops),
        strategy="fallback",
    )


def _usable_items(data: Any) -> Any:
    if data is None:
        return ()
    if isinstance(data, Mapping):
        for key in ("items", "patterns", "results", "experiences", "records"):
            if key in data:
                return data[key] or ()
        return data
    if isinstance(data, (str, bytes)):
        return (data,) if data else ()
    if isinstance(data, Sequence):
        return data
    return (data,)


def graceful_degradation(
    partial_data: T,
    error: BaseException,
    usable: Callable[[T], Sequence] | None = None,
) -> RecoveryResult[T]:
    """
    Return partial results on error when there is something worth returning.

    Args:
        partial_data: Whatever the failed operation managed to produce.
        error: The failure that interrupted it.
        usable: Extracts the usable items from ``partial_data``. By default a
            mapping's ``items``/``patterns``/``results``/``experiences``/``records``
            entry, or the sequence itself.
    """
    items = usable(partial_data) if usable is not None else _usable_items(partial_data)

    if items is not None and len(items) > 0:
        logger.warning("Returning partial results due to error: %s", error)
        return RecoveryResult(
            success=True,
            data=partial_data,
            error=error,
            attempts=1,
            strategy="degraded",
        )

    return RecoveryResult(success=False, error=error, attempts=1)
