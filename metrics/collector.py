"""
Metrics collector - central hub for resilience observations.

Subscribes to events emitted by the retriever, circuit breakers, retry
loops, embedding providers and the outbox, and provides aggregation
methods for diagnostics.
"""

from datetime import datetime, timedelta

from .models import (
    CircuitTransitionMetric,
    EmbeddingCallMetric,
    ResilienceSummary,
    RetryAttemptMetric,
    SearchMetric,
    SyncMetric,
)


class ResilienceMetricsCollector:
    """
    Collects metrics from component events, in memory.

    Usage:
        collector = ResilienceMetricsCollector()
        collector.attach(events)   # shared EventEmitter
        collector.attach(outbox)   # the outbox emits its own events

        # Later...
        summary = collector.get_summary(period="day")
    """

    def __init__(self):
        self._retries: list[RetryAttemptMetric] = []
        self._transitions: list[CircuitTransitionMetric] = []
        self._searches: list[SearchMetric] = []
        self._embedding_calls: list[EmbeddingCallMetric] = []
        self._syncs: list[SyncMetric] = []
        self._failed_messages: list[dict] = []

    def attach(self, emitter):
        """
        Attach to an event emitter.

        Subscribes to retry_attempt, circuit_state_change, search_complete,
        embedding_call_end, outbox_sync_complete and message_failed.
        """
        emitter.on("retry_attempt", self._on_retry_attempt)
        emitter.on("circuit_state_change", self._on_circuit_state_change)
        emitter.on("search_complete", self._on_search_complete)
        emitter.on("embedding_call_end", self._on_embedding_call_end)
        emitter.on("outbox_sync_complete", self._on_sync_complete)
        emitter.on("message_failed", self._on_message_failed)

    # ═══════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════

    def _on_retry_attempt(self, event: dict):
        self._retries.append(RetryAttemptMetric(
            timestamp=datetime.now(),
            label=event.get("label", "operation"),
            attempt=event.get("attempt", 0),
            max_attempts=event.get("max_attempts", 0),
            error_type=event.get("error_type", ""),
            error=event.get("error", ""),
            duration_ms=event.get("duration_ms", 0),
        ))

    def _on_circuit_state_change(self, event: dict):
        self._transitions.append(CircuitTransitionMetric(
            timestamp=datetime.now(),
            name=event.get("name", "default"),
            from_state=event.get("from", ""),
            to_state=event.get("to", ""),
            failures=event.get("failures", 0),
        ))

    def _on_search_complete(self, event: dict):
        self._searches.append(SearchMetric(
            timestamp=datetime.now(),
            result_count=event.get("result_count", 0),
            degraded=event.get("degraded", False),
            duration_ms=event.get("duration_ms", 0),
            failed_signals=list(event.get("failed_signals", [])),
        ))

    def _on_embedding_call_end(self, event: dict):
        self._embedding_calls.append(EmbeddingCallMetric(
            timestamp=datetime.now(),
            provider=event.get("provider", "unknown"),
            model=event.get("model", "unknown"),
            text_count=event.get("text_count", 1),
            duration_ms=event.get("duration_ms", 0),
            cached=event.get("cached", False),
        ))

    def _on_sync_complete(self, event: dict):
        self._syncs.append(SyncMetric(
            timestamp=datetime.now(),
            success=event.get("success", 0),
            failed=event.get("failed", 0),
            deferred=event.get("deferred", 0),
            skipped=event.get("skipped", False),
        ))

    def _on_message_failed(self, event: dict):
        self._failed_messages.append({
            "message_id": event.get("message_id"),
            "error": event.get("error", ""),
            "timestamp": datetime.now(),
        })

    # ═══════════════════════════════════════════════════════════
    # QUERY METHODS
    # ═══════════════════════════════════════════════════════════

    def _get_time_range(self, period: str) -> tuple[datetime, datetime]:
        """Convert period string to datetime range."""
        now = datetime.now()
        if period == "hour":
            start = now - timedelta(hours=1)
        elif period == "day":
            start = now - timedelta(days=1)
        elif period == "week":
            start = now - timedelta(weeks=1)
        else:  # "all"
            start = datetime.min
        return start, now

    def _filter_by_period(self, items: list, period: str) -> list:
        """Filter metrics by time period."""
        start, end = self._get_time_range(period)
        return [m for m in items if start <= m.timestamp <= end]

    def get_summary(self, period: str = "day") -> ResilienceSummary:
        """
        Get aggregated metrics summary.

        Args:
            period: Time period ("hour", "day", "week", "all")
        """
        start, end = self._get_time_range(period)

        searches = self._filter_by_period(self._searches, period)
        retries = self._filter_by_period(self._retries, period)
        transitions = self._filter_by_period(self._transitions, period)
        embed_calls = self._filter_by_period(self._embedding_calls, period)
        syncs = self._filter_by_period(self._syncs, period)

        retries_by_label: dict[str, int] = {}
        for r in retries:
            retries_by_label[r.label] = retries_by_label.get(r.label, 0) + 1

        circuit_states: dict[str, str] = {}
        for t in transitions:
            circuit_states[t.name] = t.to_state

        cached = sum(1 for c in embed_calls if c.cached)

        return ResilienceSummary(
            period_start=start,
            period_end=end,
            total_searches=len(searches),
            degraded_searches=sum(1 for s in searches if s.degraded),
            avg_search_latency_ms=(
                sum(s.duration_ms for s in searches) / len(searches) if searches else 0
            ),
            retry_attempts=len(retries),
            retries_by_label=retries_by_label,
            circuit_opens=sum(1 for t in transitions if t.to_state == "open"),
            circuit_states=circuit_states,
            total_embedding_calls=len(embed_calls),
            embedding_cache_hit_rate=(cached / len(embed_calls) * 100) if embed_calls else 0,
            messages_delivered=sum(s.success for s in syncs),
            messages_failed=sum(s.failed for s in syncs),
        )

    def get_transitions(self, name: str | None = None) -> list[CircuitTransitionMetric]:
        """Circuit breaker transitions, optionally for one breaker."""
        if name is None:
            return list(self._transitions)
        return [t for t in self._transitions if t.name == name]

    def get_recent_errors(self, limit: int = 10) -> list[dict]:
        """Most recent retry failures and dropped outbox messages."""
        errors = [
            {
                "type": "retry",
                "source": r.label,
                "error": r.error,
                "timestamp": r.timestamp,
            }
            for r in self._retries
        ]
        errors += [
            {
                "type": "outbox",
                "source": m["message_id"],
                "error": m["error"],
                "timestamp": m["timestamp"],
            }
            for m in self._failed_messages
        ]

        # Most recent first
        errors.sort(key=lambda x: x["timestamp"], reverse=True)
        return errors[:limit]

    def clear(self):
        """Clear all in-memory metrics."""
        self._retries.clear()
        self._transitions.clear()
        self._searches.clear()
        self._embedding_calls.clear()
        self._syncs.clear()
        self._failed_messages.clear()
