"""
Metrics for the discovery core.

Components report through an EventEmitter; the collector subscribes and
aggregates:

    from metrics import ResilienceMetricsCollector

    collector = ResilienceMetricsCollector()
    collector.attach(events)
    summary = collector.get_summary(period="hour")
    print(summary.degraded_searches, summary.circuit_opens)
"""

from .collector import ResilienceMetricsCollector
from .models import (
    CircuitTransitionMetric,
    EmbeddingCallMetric,
    ResilienceSummary,
    RetryAttemptMetric,
    SearchMetric,
    SyncMetric,
)

__all__ = [
    "ResilienceMetricsCollector",
    "RetryAttemptMetric",
    "CircuitTransitionMetric",
    "SearchMetric",
    "EmbeddingCallMetric",
    "SyncMetric",
    "ResilienceSummary",
]
