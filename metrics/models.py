"""
Data models for the metrics system.

These models represent individual observations and aggregated summaries.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class RetryAttemptMetric:
    """One failed attempt inside retry_with_backoff."""

    timestamp: datetime
    label: str
    attempt: int
    max_attempts: int
    error_type: str = ""
    error: str = ""
    duration_ms: int = 0


@dataclass
class CircuitTransitionMetric:
    """A circuit breaker state change."""

    timestamp: datetime
    name: str
    from_state: str
    to_state: str
    failures: int = 0


@dataclass
class SearchMetric:
    """Record of a single hybrid search."""

    timestamp: datetime
    result_count: int = 0
    degraded: bool = False
    duration_ms: int = 0
    failed_signals: list[str] = field(default_factory=list)


@dataclass
class EmbeddingCallMetric:
    """Record of a single embedding request."""

    timestamp: datetime

    # Provider details
    provider: str  # "litellm", "openai", "local", "mock", "cache"
    model: str

    text_count: int = 1
    duration_ms: int = 0
    cached: bool = False


@dataclass
class SyncMetric:
    """Record of one outbox sync pass."""

    timestamp: datetime
    success: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: bool = False


@dataclass
class ResilienceSummary:
    """High-level summary for a time period."""

    period_start: datetime
    period_end: datetime

    # Searches
    total_searches: int = 0
    degraded_searches: int = 0
    avg_search_latency_ms: float = 0.0

    # Retries
    retry_attempts: int = 0
    retries_by_label: dict[str, int] = field(default_factory=dict)

    # Circuit breakers
    circuit_opens: int = 0
    circuit_states: dict[str, str] = field(default_factory=dict)  # latest state per breaker

    # Embeddings
    total_embedding_calls: int = 0
    embedding_cache_hit_rate: float = 0.0

    # Outbox
    messages_delivered: int = 0
    messages_failed: int = 0

    @property
    def degraded_rate(self) -> float:
        if self.total_searches == 0:
            return 0.0
        return self.degraded_searches / self.total_searches * 100
