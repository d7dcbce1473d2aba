"""
Circuit breaker for preventing cascading failures.

One breaker guards one external dependency (the embedding service, the
record store, the completion service). Construct it once and share the
instance with every call site in the same fault domain:

    embedding_breaker = CircuitBreaker(threshold=5, open_duration=60, name="embeddings")
    vector = await embedding_breaker.call(lambda: embedder.aembed(text))

States:
    closed     calls pass through; consecutive failures are counted
    open       calls fail immediately with CircuitOpenError
    half-open  one probe call is admitted; its outcome closes or reopens

Counters are plain increments. Under concurrent calls the failure count
can drift by a small amount, which is fine for coarse protection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerState:
    """Snapshot of a breaker's counters."""

    state: str
    failures: int
    last_failure_at: float | None
    name: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state,
            "failures": self.failures,
            "last_failure_at": self.last_failure_at,
        }


class CircuitBreaker:
    """
    Tracks failures of one dependency and stops calling it after a threshold.

    Args:
        threshold: Consecutive failures that open the circuit.
        open_duration: Seconds the circuit stays open before admitting a probe.
        probe_delay: Seconds a half-open probe slot stays reserved. A probe
            that neither succeeds nor fails within this window (for example a
            hung call) releases the slot so another probe can be admitted.
        name: Dependency name used in logs, events and errors.
        clock: Monotonic time source, injectable for tests.
        emitter: Optional EventEmitter receiving ``circuit_state_change``.
    """

    def __init__(
        self,
        threshold: int = 5,
        open_duration: float = 60.0,
        probe_delay: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        emitter=None,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.open_duration = open_duration
        self.probe_delay = probe_delay
        self.name = name
        self._clock = clock
        self._emitter = emitter

        self._state = CLOSED
        self._failures = 0
        self._last_failure_at: float | None = None
        self._probe_started_at: float | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> str:
        """Current state; an open circuit whose cooldown elapsed reads as half-open."""
        if self._state == OPEN and self._cooldown_elapsed():
            self._transition(HALF_OPEN)
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self.state,
            failures=self._failures,
            last_failure_at=self._last_failure_at,
            name=self.name,
        )

    def reset(self):
        """Force the breaker back to closed with a clean slate."""
        self._failures = 0
        self._last_failure_at = None
        self._probe_started_at = None
        if self._state != CLOSED:
            self._transition(CLOSED)

    def retry_after(self) -> float:
        """Seconds until an open circuit admits its probe (0 if not open)."""
        if self._state != OPEN or self._last_failure_at is None:
            return 0.0
        return max(0.0, self.open_duration - (self._clock() - self._last_failure_at))

    def _cooldown_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return self._clock() - self._last_failure_at >= self.open_duration

    def _transition(self, new_state: str):
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        if new_state == OPEN:
            logger.error(
                "Circuit breaker '%s' OPENED after %d failures", self.name, self._failures
            )
        elif new_state == CLOSED:
            logger.info("Circuit breaker '%s' closed after successful recovery", self.name)
        else:
            logger.info("Circuit breaker '%s' half-open, admitting one probe", self.name)

        if self._emitter is not None:
            self._emitter.emit("circuit_state_change", {
                "name": self.name,
                "from": old_state,
                "to": new_state,
                "failures": self._failures,
            })

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True if it is the probe."""
        state = self.state
        if state == CLOSED:
            return False

        if state == HALF_OPEN:
            now = self._clock()
            slot_free = (
                self._probe_started_at is None
                or now - self._probe_started_at >= self.probe_delay
            )
            if slot_free:
                self._probe_started_at = now
                return True
            raise CircuitOpenError(self.name, retry_after=0.0)

        raise CircuitOpenError(self.name, retry_after=self.retry_after())

    def record_success(self, probe: bool = False):
        if probe or self._state == HALF_OPEN:
            self._probe_started_at = None
            self._failures = 0
            self._transition(CLOSED)
        elif self._state == CLOSED:
            self._failures = 0

    def record_failure(self, probe: bool = False):
        self._failures += 1
        self._last_failure_at = self._clock()

        if probe or self._state == HALF_OPEN:
            self._probe_started_at = None
            self._transition(OPEN)
        elif self._failures >= self.threshold:
            self._transition(OPEN)

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``op`` through the breaker.

        Raises:
            CircuitOpenError: The circuit is open (or a probe is already in
                flight); ``op`` was not invoked.
        """
        probe = self._admit()
        slot = self._probe_started_at
        try:
            result = await op()
        except (Exception, asyncio.CancelledError):
            # A deadline enforced by the caller cancels op; that is a failure too
            self.record_failure(probe=self._owns_slot(probe, slot))
            raise
        self.record_success(probe=self._owns_slot(probe, slot))
        return result

    def _owns_slot(self, probe: bool, slot: float | None) -> bool:
        """A probe whose slot was released and handed to another call reports as a plain call."""
        return probe and self._probe_started_at == slot

    def __repr__(self):
        return f"CircuitBreaker({self.name!r}, state={self._state}, failures={self._failures})"
