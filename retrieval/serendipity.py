"""
Serendipity detection: unexpected but relevant cross-category clusters.

Example: a question about UFO sightings whose results sit close, in
embedding space, to a group of ball-lightning reports.

Algorithm:
1. Primary category = most frequent category among the query's records
2. Centroid of those records' stored embeddings
3. Nearest neighbours of the centroid across the whole corpus (loose floor)
4. Keep other-category neighbours above a stricter floor
5. Largest same-category group of at least min_cluster_size wins

Insufficient signal (no embeddings, too few neighbours) returns None;
only a failing store raises.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass

from resilience import CircuitBreaker

from .embeddings import centroid
from .models import Record, ScoredRecord, SerendipityConnection, SimilarRecord
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class SerendipityConfig:
    """Thresholds for cross-category detection."""

    candidate_limit: int = 30
    candidate_floor: float = 0.5
    similarity_floor: float = 0.6  # strict: similarity must exceed this
    min_cluster_size: int = 3
    max_representatives: int = 5

    @classmethod
    def from_dict(cls, data: dict | None) -> "SerendipityConfig":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def primary_category(records: list[Record]) -> str | None:
    """Most frequent category; the first one encountered wins ties."""
    counts = Counter(r.category for r in records)
    if not counts:
        return None
    # Counter preserves insertion order and max() keeps the first maximum
    return max(counts, key=counts.__getitem__)


class SerendipityDetector:
    """
    Finds a cross-category cluster near the centroid of a result set.

    Stateless between calls; safe to share across conversations.
    """

    def __init__(
        self,
        store: RecordStore,
        config: SerendipityConfig | None = None,
        store_breaker: CircuitBreaker | None = None,
    ):
        self.store = store
        self.config = config or SerendipityConfig()
        self.store_breaker = store_breaker

    async def _store_call(self, fn, *args):
        async def op():
            return await asyncio.to_thread(fn, *args)

        if self.store_breaker is None:
            return await op()
        return await self.store_breaker.call(op)

    async def detect(
        self,
        records: list[Record | ScoredRecord],
        query_text: str = "",
    ) -> SerendipityConnection | None:
        """
        Look for a cluster of another category similar to ``records``.

        Args:
            records: The query's results (records or scored records).
            query_text: The user's question, for logging only.

        Returns:
            The strongest connection, or None when there is not enough signal.
        """
        cfg = self.config
        records = [r.record if isinstance(r, ScoredRecord) else r for r in records]

        primary = primary_category(records)
        if primary is None:
            return None

        logger.debug(
            "Serendipity detection: primary=%s sources=%d question=%r",
            primary, len(records), (query_text or "")[:50],
        )

        full = await self._store_call(self.store.get_records, [r.id for r in records])
        vectors = [r.embedding for r in full if r.embedding]
        if not vectors:
            logger.debug("No embeddings available for serendipity detection")
            return None

        dim = len(vectors[0])
        consistent = [v for v in vectors if len(v) == dim]
        if len(consistent) < len(vectors):
            logger.warning(
                "Dropped %d embeddings with mismatched dimensions", len(vectors) - len(consistent)
            )

        center = centroid(consistent)
        candidates = await self._store_call(
            self.store.vector_search, center, None, cfg.candidate_limit, cfg.candidate_floor
        )

        cross = [
            (record, similarity) for record, similarity in candidates
            if record.category != primary and similarity > cfg.similarity_floor
        ]
        if len(cross) < cfg.min_cluster_size:
            logger.debug("Not enough cross-category matches (%d)", len(cross))
            return None

        groups: dict[str, list[tuple[Record, float]]] = {}
        for record, similarity in cross:
            groups.setdefault(record.category, []).append((record, similarity))

        target, members = max(groups.items(), key=lambda item: len(item[1]))
        if len(members) < cfg.min_cluster_size:
            logger.debug("No significant cross-category cluster found")
            return None

        avg_similarity = sum(s for _, s in members) / len(members)
        logger.info(
            "Serendipity detected: %s -> %s (%d records, avg similarity %.3f)",
            primary, target, len(members), avg_similarity,
        )

        return SerendipityConnection(
            target_category=target,
            primary_category=primary,
            aggregate_similarity=avg_similarity,
            explanation=(
                f"These {target} experiences show surprising similarities "
                f"with {primary} reports"
            ),
            records=[
                SimilarRecord(record=r, similarity=s)
                for r, s in members[: cfg.max_representatives]
            ],
            count=len(members),
        )
