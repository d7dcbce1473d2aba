"""
Unit tests for resilience/retry.py

Tests cover:
- backoff_delay growth and cap
- retry_with_backoff: success, exhaustion, timing, timeouts, predicates,
  cancellation and retry_attempt events
- fallback_strategy ordering
- graceful_degradation with and without usable partial data
"""

import asyncio
import time

import pytest

from resilience import (
    FallbackExhaustedError,
    OperationCancelledError,
    OperationTimeoutError,
    RetriesExhaustedError,
    backoff_delay,
    fallback_strategy,
    graceful_degradation,
    retry_with_backoff,
)
from utils.events import EventEmitter


class Flaky:
    """Async callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None, value="ok"):
        self.failures = failures
        self.error = error or ConnectionError("connection reset")
        self.value = value
        self.calls: list[float] = []

    async def __call__(self):
        self.calls.append(time.monotonic())
        if len(self.calls) <= self.failures:
            raise self.error
        return self.value


# =============================================================================
# Backoff Tests
# =============================================================================


class TestBackoffDelay:
    def test_doubles(self):
        assert [backoff_delay(n, 1.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(10, 1.0, max_delay=10.0) == 10.0


# =============================================================================
# retry_with_backoff Tests
# =============================================================================


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        op = Flaky(0)
        result = await retry_with_backoff(op, base_delay=0.01)
        assert result.success is True
        assert result.data == "ok"
        assert result.attempts == 1
        assert result.strategy is None

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds_with_growing_delays(self):
        base_delay = 0.05
        op = Flaky(2)
        result = await retry_with_backoff(op, max_attempts=3, base_delay=base_delay, timeout=None)

        assert result.success is True
        assert result.attempts == 3
        assert result.strategy == "retry"
        first_gap = op.calls[1] - op.calls[0]
        second_gap = op.calls[2] - op.calls[1]
        # Small tolerance for event loop clock granularity
        assert first_gap >= base_delay - 0.005
        assert second_gap >= base_delay * 2 - 0.005

    @pytest.mark.asyncio
    async def test_exhausted_returns_last_error(self):
        error = ConnectionError("still down")
        op = Flaky(5, error=error)
        result = await retry_with_backoff(op, max_attempts=3, base_delay=0.001)

        assert result.success is False
        assert result.error is error
        assert result.attempts == 3
        assert len(op.calls) == 3

    @pytest.mark.asyncio
    async def test_unwrap_raises_chained(self):
        result = await retry_with_backoff(Flaky(5), max_attempts=2, base_delay=0.001)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            result.unwrap()
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        async def slow():
            await asyncio.sleep(1)

        result = await retry_with_backoff(slow, max_attempts=2, base_delay=0.001, timeout=0.01)
        assert result.success is False
        assert isinstance(result.error, OperationTimeoutError)
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self):
        op = Flaky(5, error=ValueError("bad input"))
        result = await retry_with_backoff(
            op, max_attempts=3, base_delay=0.001,
            retryable=lambda e: not isinstance(e, ValueError),
        )
        assert result.success is False
        assert result.attempts == 1
        assert len(op.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        cancel = asyncio.Event()
        cancel.set()
        op = Flaky(0)
        result = await retry_with_backoff(op, cancel_event=cancel)
        assert result.success is False
        assert isinstance(result.error, OperationCancelledError)
        assert op.calls == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        cancel = asyncio.Event()
        op = Flaky(5)

        async def cancel_soon():
            await asyncio.sleep(0.02)
            cancel.set()

        started = time.monotonic()
        result, _ = await asyncio.gather(
            retry_with_backoff(op, max_attempts=3, base_delay=5.0, cancel_event=cancel),
            cancel_soon(),
        )
        assert isinstance(result.error, OperationCancelledError)
        assert len(op.calls) == 1
        assert time.monotonic() - started < 2.0

    @pytest.mark.asyncio
    async def test_emits_retry_attempt(self):
        events = EventEmitter()
        received = []
        events.on("retry_attempt", received.append)

        await retry_with_backoff(Flaky(1), base_delay=0.001, emitter=events, label="embedding")

        assert len(received) == 1
        assert received[0]["label"] == "embedding"
        assert received[0]["attempt"] == 1
        assert received[0]["error_type"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            await retry_with_backoff(Flaky(0), max_attempts=0)


# =============================================================================
# fallback_strategy Tests
# =============================================================================


class TestFallbackStrategy:
    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        result = await fallback_strategy([Flaky(1, value="full"), Flaky(0, value="simple")])
        assert result.success is True
        assert result.data == "simple"
        assert result.strategy_index == 1
        assert result.strategy == "fallback"

    @pytest.mark.asyncio
    async def test_primary_success(self):
        result = await fallback_strategy([Flaky(0, value="full")])
        assert result.strategy_index == 0
        assert result.strategy is None

    @pytest.mark.asyncio
    async def test_all_fail(self):
        error = ConnectionError("last")
        result = await fallback_strategy([Flaky(1), Flaky(1, error=error)])
        assert result.success is False
        assert result.error is error

    @pytest.mark.asyncio
    async def test_empty(self):
        result = await fallback_strategy([])
        assert result.success is False
        assert isinstance(result.error, FallbackExhaustedError)


# =============================================================================
# graceful_degradation Tests
# =============================================================================


class TestGracefulDegradation:
    def test_partial_items(self):
        error = TimeoutError("slow")
        result = graceful_degradation({"patterns": [1, 2]}, error)
        assert result.success is True
        assert result.degraded is True
        assert result.error is error
        assert result.data == {"patterns": [1, 2]}

    def test_nothing_usable(self):
        result = graceful_degradation({"patterns": []}, TimeoutError("slow"))
        assert result.success is False
        assert result.degraded is False

    def test_none(self):
        assert graceful_degradation(None, TimeoutError("slow")).success is False

    def test_sequence(self):
        assert graceful_degradation(["a"], TimeoutError("slow")).degraded is True

    def test_custom_extractor(self):
        result = graceful_degradation(
            {"hits": ["a"]}, TimeoutError("slow"), usable=lambda d: d["hits"]
        )
        assert result.success is True
