"""
Unit tests for retrieval/hybrid.py

Tests cover:
- Reciprocal Rank Fusion scoring and ordering
- Hybrid search over both signals
- Degradation when one signal fails, RetrievalError when both fail
- similar_to_id lookups and exclusion of the source record
- Filters, caps and has_more
- Circuit breaker and retry integration
- search_complete events
"""

from datetime import datetime

import pytest

from conftest import BrokenEmbedder, VectorEmbedder
from resilience import CircuitBreaker, InvalidInputError
from retrieval.errors import EmbeddingServiceError, RecordNotFoundError, RetrievalError, StoreError
from retrieval.hybrid import HybridRetriever, rrf_fuse
from utils.events import EventEmitter


class FailingLexicalStore:
    """Delegates to a real store but the lexical query always fails."""

    def __init__(self, inner):
        self.inner = inner
        self.lexical_calls = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def lexical_search(self, *args, **kwargs):
        self.lexical_calls += 1
        raise StoreError("database is locked")


# =============================================================================
# RRF Tests
# =============================================================================


class TestRrfFuse:
    def test_first_in_two_lists_beats_first_in_one(self):
        scores = rrf_fuse([["a", "b"], ["a", "c"]], k=60)
        assert scores["a"] == pytest.approx(2 / 61)
        assert scores["b"] == pytest.approx(1 / 62)

        single = rrf_fuse([["x"], ["y"]], k=60)
        assert single["x"] == pytest.approx(1 / 61)
        assert scores["a"] > single["x"]

    def test_absent_ids_get_nothing_from_a_list(self):
        scores = rrf_fuse([["a"], ["b", "a"]])
        assert scores["a"] == pytest.approx(1 / 61 + 1 / 62)
        assert scores["b"] == pytest.approx(1 / 61)

    def test_duplicates_count_once(self):
        scores = rrf_fuse([["a", "a", "b"]])
        assert scores["a"] == pytest.approx(1 / 61)
        assert scores["b"] == pytest.approx(1 / 63)

    def test_custom_k(self):
        scores = rrf_fuse([["a"]], k=0)
        assert scores["a"] == pytest.approx(1.0)

    def test_empty(self):
        assert rrf_fuse([]) == {}
        assert rrf_fuse([[], []]) == {}


# =============================================================================
# Hybrid Search Tests
# =============================================================================


class TestHybridSearch:
    @pytest.mark.asyncio
    async def test_fuses_both_signals(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search("triangle lake")

        assert result.ids == ["r1", "r3", "r2", "r4"]
        assert result.degraded is False
        assert sorted(result.signals) == ["lexical", "vector"]
        top = result.records[0]
        assert top.fused_score == pytest.approx(2 / 61)
        assert top.vector_rank == 1
        assert top.lexical_rank == 1

    @pytest.mark.asyncio
    async def test_scores_are_non_increasing(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search("triangle lake")
        scores = [r.fused_score for r in result.records]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_vector_failure_degrades_to_lexical(self, store, corpus):
        retriever = HybridRetriever(store, BrokenEmbedder())
        result = await retriever.search("triangle lake")

        assert result.degraded is True
        assert result.ids == ["r1", "r3"]
        assert result.signals == ["lexical"]
        assert "vector" in result.failed_signals
        # Lexical-only hits carry no similarity
        assert "similarity_score" not in result.records[0].to_dict()

    @pytest.mark.asyncio
    async def test_lexical_failure_degrades_to_vector(self, store, corpus, embedder):
        retriever = HybridRetriever(FailingLexicalStore(store), embedder)
        result = await retriever.search("triangle lake")

        assert result.degraded is True
        assert result.ids == ["r1", "r2", "r3", "r4"]
        assert list(result.failed_signals) == ["lexical"]

    @pytest.mark.asyncio
    async def test_both_signals_failing_raises(self, store, corpus):
        retriever = HybridRetriever(FailingLexicalStore(store), BrokenEmbedder())
        with pytest.raises(RetrievalError) as exc_info:
            await retriever.search("triangle lake")
        assert isinstance(exc_info.value.__cause__, EmbeddingServiceError)

    @pytest.mark.asyncio
    async def test_filters_restrict_both_signals(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search("triangle lake", {"category": "ufo"})
        assert result.ids == ["r1", "r3"]
        assert all(r.record.category == "ufo" for r in result.records)

    @pytest.mark.asyncio
    async def test_filters_eliminating_everything_return_empty(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search("triangle lake", {"category": "nothing"})
        assert result.is_empty()
        assert result.degraded is False
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_no_query_is_filter_only_by_recency(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search()
        assert result.ids == ["r1", "r2", "r3", "r4"]
        assert result.signals == ["lexical"]
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_max_results_caps_and_sets_has_more(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search("triangle lake", max_results=2)
        assert result.ids == ["r1", "r3"]
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_invalid_max_results(self, store, embedder):
        retriever = HybridRetriever(store, embedder)
        with pytest.raises(InvalidInputError):
            await retriever.search("anything", max_results=0)

    @pytest.mark.asyncio
    async def test_invalid_filters(self, store, embedder):
        retriever = HybridRetriever(store, embedder)
        with pytest.raises(InvalidInputError):
            await retriever.search(
                "anything", {"dateRange": {"from": "2024-01-01", "to": "2020-01-01"}}
            )


# =============================================================================
# Tie-Break Tests
# =============================================================================


@pytest.fixture
def tie_store(store, make_record):
    """Two records scoring 1/61 each: one only reachable by vector, one only lexically."""

    def seed(vector_dates: dict, lexical_dates: dict):
        store.add_records([
            make_record("vec", "Glowing orb", embedding=[1.0, 0.0, 0.0], **vector_dates),
            make_record("lex", "Footsteps in the attic", **lexical_dates),
        ])
        return store

    return seed


class TestTieBreak:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("vec_year, lex_year, expected", [
        (2020, 2023, ["lex", "vec"]),
        (2023, 2020, ["vec", "lex"]),
    ])
    async def test_more_recent_occurrence_first(self, tie_store, vec_year, lex_year, expected):
        store = tie_store(
            {"occurred_at": datetime(vec_year, 1, 1)},
            {"occurred_at": datetime(lex_year, 1, 1)},
        )
        retriever = HybridRetriever(store, VectorEmbedder({"attic": [1.0, 0.0, 0.0]}))

        result = await retriever.search("attic")

        assert result.records[0].fused_score == pytest.approx(result.records[1].fused_score)
        assert result.ids == expected

    @pytest.mark.asyncio
    async def test_equal_occurrence_falls_back_to_creation(self, tie_store):
        store = tie_store(
            {"occurred_at": datetime(2022, 5, 1), "created_at": datetime(2024, 3, 1)},
            {"occurred_at": datetime(2022, 5, 1), "created_at": datetime(2024, 1, 1)},
        )
        retriever = HybridRetriever(store, VectorEmbedder({"attic": [1.0, 0.0, 0.0]}))

        result = await retriever.search("attic")
        assert result.ids == ["vec", "lex"]

    @pytest.mark.asyncio
    async def test_missing_occurrence_falls_back_to_creation(self, tie_store):
        store = tie_store(
            {"created_at": datetime(2023, 1, 1)},
            {"created_at": datetime(2024, 1, 1)},
        )
        retriever = HybridRetriever(store, VectorEmbedder({"attic": [1.0, 0.0, 0.0]}))

        result = await retriever.search("attic")
        assert result.ids == ["lex", "vec"]

    @pytest.mark.asyncio
    async def test_dated_occurrence_beats_undated(self, tie_store):
        store = tie_store(
            {"occurred_at": datetime(1990, 1, 1), "created_at": datetime(2020, 1, 1)},
            {"created_at": datetime(2024, 1, 1)},
        )
        retriever = HybridRetriever(store, VectorEmbedder({"attic": [1.0, 0.0, 0.0]}))

        result = await retriever.search("attic")
        assert result.ids == ["vec", "lex"]


# =============================================================================
# similar_to_id Tests
# =============================================================================


class TestSimilarTo:
    @pytest.mark.asyncio
    async def test_uses_stored_embedding_and_excludes_source(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        result = await retriever.search(similar_to_id="r1")

        assert "r1" not in result.ids
        assert result.ids[0] == "r2"
        assert result.signals == ["vector"]
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_unknown_record(self, store, corpus, embedder):
        retriever = HybridRetriever(store, embedder)
        with pytest.raises(RecordNotFoundError):
            await retriever.search(similar_to_id="missing")

    @pytest.mark.asyncio
    async def test_record_without_embedding(self, store, corpus, embedder, make_record):
        store.add_record(make_record("r5", "No vector yet"))
        retriever = HybridRetriever(store, embedder)
        with pytest.raises(RecordNotFoundError, match="no stored embedding"):
            await retriever.search(similar_to_id="r5")


# =============================================================================
# Resilience Integration Tests
# =============================================================================


class TestResilience:
    @pytest.mark.asyncio
    async def test_open_breaker_skips_embedding_call(self, store, corpus):
        embedder = BrokenEmbedder()
        breaker = CircuitBreaker(threshold=1, open_duration=60, name="embeddings")
        retriever = HybridRetriever(store, embedder, embedding_breaker=breaker)

        first = await retriever.search("triangle lake")
        assert first.degraded is True
        assert breaker.state == "open"

        second = await retriever.search("triangle lake")
        assert second.degraded is True
        assert embedder.calls == 1
        assert "OPEN" in second.failed_signals["vector"]

    @pytest.mark.asyncio
    async def test_transient_embedding_failure_is_retried(self, store, corpus):
        embedder = VectorEmbedder({"triangle lake": [1.0, 0.0, 0.0]})
        embedder.failures_left = 1
        retriever = HybridRetriever(
            store,
            embedder,
            retry_options={"max_attempts": 3, "base_delay": 0.01, "max_delay": 0.01, "timeout": None},
        )
        result = await retriever.search("triangle lake")

        assert result.degraded is False
        assert embedder.calls == ["triangle lake", "triangle lake"]

    @pytest.mark.asyncio
    async def test_emits_search_complete(self, store, corpus, embedder):
        events = EventEmitter()
        received = []
        events.on("search_complete", received.append)
        retriever = HybridRetriever(store, embedder, emitter=events)

        await retriever.search("triangle lake", max_results=3)

        assert len(received) == 1
        assert received[0]["result_count"] == 3
        assert received[0]["has_more"] is True
        assert received[0]["degraded"] is False
        assert received[0]["failed_signals"] == []
