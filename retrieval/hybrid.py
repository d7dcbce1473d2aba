"""
Hybrid retrieval: vector nearest-neighbour + lexical ranking fused with RRF.

Both sub-queries run concurrently against the same filtered candidate set.
If one of them fails the other one's ranking is returned with
``degraded=True``; if both fail the call raises RetrievalError.

Usage:
    retriever = HybridRetriever(store, embedder)
    result = await retriever.search("glowing triangle over the lake", filters, max_results=15)
    for hit in result.records:
        print(hit.record.title, hit.fused_score)
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any, Awaitable, Callable

from resilience import CircuitBreaker, CircuitOpenError, InvalidInputError, retry_with_backoff

from .embeddings import EmbeddingProvider, aembed
from .errors import RecordNotFoundError, RetrievalError
from .models import Record, RetrievalResult, ScoredRecord, SearchFilters
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_RRF_K = 60
VECTOR = "vector"
LEXICAL = "lexical"


def rrf_fuse(ranked_lists: list[list[str]], k: int = DEFAULT_RRF_K) -> dict[str, float]:
    """
    Reciprocal Rank Fusion across ranked id lists.

    For each id, score = sum_i 1 / (k + rank_i), where rank_i is the 1-based
    position of the id in list i. Ids absent from a list get nothing from it.
    Duplicates within one list only count at their first position.

    Returns:
        Mapping id -> fused score, in first-seen order (unsorted).
    """
    scores: dict[str, float] = {}
    for ranked in ranked_lists:
        seen = set()
        for rank, item_id in enumerate(ranked, start=1):
            if item_id in seen:
                continue
            seen.add(item_id)
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (k + rank)
    return scores


def _retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (CircuitOpenError, InvalidInputError, RecordNotFoundError))


class HybridRetriever:
    """
    Fuses semantic and lexical ranking over one record store.

    Args:
        store: RecordStore implementation (synchronous; called off the loop).
        embedder: EmbeddingProvider for free-text queries.
        rrf_k: RRF smoothing constant.
        candidate_multiplier: Each sub-query fetches max_results * this many candidates.
        min_similarity: Optional floor for vector hits.
        embedding_breaker: Breaker shared by every caller of the embedding service.
        store_breaker: Breaker shared by every caller of the record store.
        retry_options: Keyword arguments for retry_with_backoff around each
            guarded call, or None to call once.
        emitter: Optional EventEmitter receiving ``search_complete``.
    """

    def __init__(
        self,
        store: RecordStore,
        embedder: EmbeddingProvider,
        *,
        rrf_k: int = DEFAULT_RRF_K,
        candidate_multiplier: int = 3,
        min_similarity: float | None = None,
        embedding_breaker: CircuitBreaker | None = None,
        store_breaker: CircuitBreaker | None = None,
        retry_options: dict[str, Any] | None = None,
        emitter=None,
    ):
        self.store = store
        self.embedder = embedder
        self.rrf_k = rrf_k
        self.candidate_multiplier = max(1, candidate_multiplier)
        self.min_similarity = min_similarity
        self.embedding_breaker = embedding_breaker
        self.store_breaker = store_breaker
        self.retry_options = retry_options
        self.emitter = emitter

    # ═══════════════════════════════════════════════════════════
    # GUARDED CALLS
    # ═══════════════════════════════════════════════════════════

    async def _guarded(
        self,
        op: Callable[[], Awaitable[Any]],
        breaker: CircuitBreaker | None,
        label: str,
    ) -> Any:
        """Run op through its breaker, retrying per retry_options."""

        async def attempt():
            if breaker is None:
                return await op()
            return await breaker.call(op)

        if self.retry_options is None:
            return await attempt()

        result = await retry_with_backoff(
            attempt,
            retryable=_retryable,
            emitter=self.emitter,
            label=label,
            **self.retry_options,
        )
        if not result.success:
            raise result.error
        return result.data

    def _store_call(self, label: str, fn: Callable, *args) -> Awaitable[Any]:
        return self._guarded(lambda: asyncio.to_thread(fn, *args), self.store_breaker, label)

    async def _vector_hits(
        self,
        query_vector: list[float] | None,
        query_text: str | None,
        filters: SearchFilters,
        limit: int,
    ) -> list[tuple[Record, float]]:
        if query_vector is None:
            query_vector = await self._guarded(
                lambda: aembed(self.embedder, query_text), self.embedding_breaker, "embedding"
            )
        return await self._store_call(
            "vector_search", self.store.vector_search, query_vector, filters, limit, self.min_similarity
        )

    async def _lexical_hits(
        self, query_text: str, filters: SearchFilters, limit: int
    ) -> list[tuple[Record, float]]:
        return await self._store_call(
            "lexical_search", self.store.lexical_search, query_text, filters, limit
        )

    # ═══════════════════════════════════════════════════════════
    # SEARCH
    # ═══════════════════════════════════════════════════════════

    async def search(
        self,
        natural_query: str | None = None,
        filters: SearchFilters | Mapping | None = None,
        similar_to_id: str | None = None,
        max_results: int = 15,
    ) -> RetrievalResult:
        """
        Ranked records for a free-text query and/or a reference record.

        - natural_query: embedded for the vector signal and used for the lexical one
        - similar_to_id: that record's stored embedding is the query vector
          (no embedding call); the record itself is excluded from the results
        - neither: filter-only retrieval, most recent first

        Raises:
            InvalidInputError: max_results < 1 or malformed filters.
            RecordNotFoundError: similar_to_id is unknown or has no embedding.
            RetrievalError: every ranking signal failed.
        """
        if max_results < 1:
            raise InvalidInputError(f"max_results must be at least 1, got {max_results}")
        if filters is None or isinstance(filters, Mapping):
            filters = SearchFilters.from_dict(filters)

        started = time.monotonic()
        query_text = (natural_query or "").strip() or None
        limit = max_results * self.candidate_multiplier

        query_vector = None
        excluded: set[str] = set()
        if similar_to_id:
            source = await self._store_call("get_record", self.store.get_record, similar_to_id)
            if source is None:
                raise RecordNotFoundError(similar_to_id)
            if not source.embedding:
                raise RecordNotFoundError(similar_to_id, "has no stored embedding")
            query_vector = source.embedding
            excluded.add(similar_to_id)

        signals: dict[str, Awaitable] = {}
        if query_vector is not None or query_text:
            signals[VECTOR] = self._vector_hits(query_vector, query_text, filters, limit + len(excluded))
        if query_text or query_vector is None:
            signals[LEXICAL] = self._lexical_hits(query_text or "", filters, limit)

        outcomes = await asyncio.gather(*signals.values(), return_exceptions=True)

        ranked: dict[str, list[tuple[Record, float]]] = {}
        errors: dict[str, BaseException] = {}
        for name, outcome in zip(signals, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                errors[name] = outcome
                logger.warning("%s search failed: %s", name.capitalize(), outcome)
                continue
            hits = [
                (record, score) for record, score in outcome
                if record.id not in excluded and filters.matches(record)
            ]
            ranked[name] = hits[:limit]

        if not ranked:
            cause = errors.get(VECTOR) or errors.get(LEXICAL)
            raise RetrievalError(f"All search signals failed: {cause}") from cause

        degraded = bool(errors)
        if degraded:
            logger.warning(
                "Returning degraded results from %s only", ", ".join(sorted(ranked))
            )

        result = self._fuse(ranked, max_results)
        result.degraded = degraded
        result.query = query_text
        result.failed_signals = {name: str(e) for name, e in errors.items()}

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "Search %r: %d results (degraded=%s) in %dms",
            query_text, len(result.records), degraded, duration_ms,
        )
        if self.emitter is not None:
            self.emitter.emit("search_complete", {
                "query": query_text,
                "similar_to_id": similar_to_id,
                "degraded": degraded,
                "result_count": len(result.records),
                "has_more": result.has_more,
                "duration_ms": duration_ms,
                "failed_signals": list(errors),
            })
        return result

    def _fuse(self, ranked: dict[str, list[tuple[Record, float]]], max_results: int) -> RetrievalResult:
        """Combine per-signal rankings into one capped result."""
        fused = rrf_fuse([[r.id for r, _ in hits] for hits in ranked.values()], k=self.rrf_k)

        scored: dict[str, ScoredRecord] = {}
        for name, hits in ranked.items():
            for rank, (record, score) in enumerate(hits, start=1):
                entry = scored.setdefault(record.id, ScoredRecord(record=record))
                if name == VECTOR and entry.vector_rank is None:
                    entry.vector_score = score
                    entry.vector_rank = rank
                elif name == LEXICAL and entry.lexical_rank is None:
                    entry.lexical_score = score
                    entry.lexical_rank = rank

        for record_id, entry in scored.items():
            entry.fused_score = fused[record_id]

        ordered = sorted(
            scored.values(),
            key=lambda e: (e.fused_score, e.record.recency_key()),
            reverse=True,
        )
        return RetrievalResult(
            records=ordered[:max_results],
            has_more=len(ordered) > max_results,
            signals=list(ranked),
        )
