"""
Unit tests for retrieval/serendipity.py

Tests cover:
- Primary category selection
- Cross-category cluster detection and its thresholds
- Representatives cap and explanation text
- Insufficient signal returning None
- Store failures propagating
"""

import pytest

from resilience import CircuitBreaker, CircuitOpenError
from retrieval.errors import StoreError
from retrieval.models import ScoredRecord
from retrieval.serendipity import SerendipityConfig, SerendipityDetector, primary_category


def _x_records(make_record, n=5):
    return [
        make_record(f"x{i}", category="X", embedding=[1.0, 0.01 * i, 0.0]) for i in range(n)
    ]


def _y_records(make_record, n=3):
    # cos([0.9, 0.3, 0], [1, 0, 0]) ~= 0.95
    return [
        make_record(f"y{i}", category="Y", embedding=[0.9, 0.3 + 0.01 * i, 0.0]) for i in range(n)
    ]


class BrokenStore:
    def get_records(self, record_ids):
        raise StoreError("connection reset")


# =============================================================================
# Primary Category Tests
# =============================================================================


class TestPrimaryCategory:
    def test_most_frequent(self, make_record):
        records = [
            make_record("a", category="ghost"),
            make_record("b", category="ufo"),
            make_record("c", category="ufo"),
        ]
        assert primary_category(records) == "ufo"

    def test_first_encountered_wins_ties(self, make_record):
        records = [
            make_record("a", category="ghost"),
            make_record("b", category="ufo"),
            make_record("c", category="ufo"),
            make_record("d", category="ghost"),
        ]
        assert primary_category(records) == "ghost"

    def test_empty(self):
        assert primary_category([]) is None


# =============================================================================
# Detection Tests
# =============================================================================


class TestDetect:
    @pytest.mark.asyncio
    async def test_finds_cross_category_cluster(self, store, make_record):
        xs = _x_records(make_record)
        store.add_records(xs + _y_records(make_record))
        detector = SerendipityDetector(store)

        connection = await detector.detect(xs, "lights")

        assert connection is not None
        assert connection.target_category == "Y"
        assert connection.primary_category == "X"
        assert connection.count == 3
        assert len(connection.records) == 3
        assert connection.aggregate_similarity > 0.6
        assert connection.explanation == (
            "These Y experiences show surprising similarities with X reports"
        )

    @pytest.mark.asyncio
    async def test_two_qualifying_records_are_not_enough(self, store, make_record):
        xs = _x_records(make_record)
        store.add_records(xs + _y_records(make_record, n=2))
        detector = SerendipityDetector(store)

        assert await detector.detect(xs) is None

    @pytest.mark.asyncio
    async def test_candidates_below_the_strict_floor_do_not_qualify(self, store, make_record):
        xs = _x_records(make_record)
        far = [
            # ~0.57 against the centroid: a candidate, but not above 0.6
            make_record(f"z{i}", category="Z", embedding=[0.55, 0.835, 0.0]) for i in range(4)
        ]
        store.add_records(xs + far)
        detector = SerendipityDetector(store)

        assert await detector.detect(xs) is None

    @pytest.mark.asyncio
    async def test_largest_group_wins(self, store, make_record):
        xs = _x_records(make_record)
        zs = [make_record(f"z{i}", category="Z", embedding=[0.95, 0.2, 0.0]) for i in range(4)]
        store.add_records(xs + _y_records(make_record) + zs)
        detector = SerendipityDetector(store)

        connection = await detector.detect(xs)
        assert connection.target_category == "Z"
        assert connection.count == 4

    @pytest.mark.asyncio
    async def test_representatives_are_capped(self, store, make_record):
        xs = _x_records(make_record)
        store.add_records(xs + _y_records(make_record, n=7))
        detector = SerendipityDetector(store, SerendipityConfig(max_representatives=5))

        connection = await detector.detect(xs)
        assert connection.count == 7
        assert len(connection.records) == 5

    @pytest.mark.asyncio
    async def test_accepts_scored_records(self, store, make_record):
        xs = _x_records(make_record)
        store.add_records(xs + _y_records(make_record))
        detector = SerendipityDetector(store)

        connection = await detector.detect([ScoredRecord(record=r) for r in xs])
        assert connection.target_category == "Y"

    @pytest.mark.asyncio
    async def test_no_embeddings_returns_none(self, store, make_record):
        records = [make_record(f"n{i}", category="X") for i in range(3)]
        store.add_records(records)
        detector = SerendipityDetector(store)

        assert await detector.detect(records) is None

    @pytest.mark.asyncio
    async def test_empty_input_returns_none(self, store):
        assert await SerendipityDetector(store).detect([]) is None

    @pytest.mark.asyncio
    async def test_mismatched_dimensions_are_dropped(self, store, make_record):
        xs = _x_records(make_record)
        odd = make_record("odd", category="X", embedding=[1.0, 0.0])
        store.add_records(xs + [odd] + _y_records(make_record))
        detector = SerendipityDetector(store)

        connection = await detector.detect(xs + [odd])
        assert connection.target_category == "Y"

    @pytest.mark.asyncio
    async def test_tool_output_shape(self, store, make_record):
        xs = _x_records(make_record)
        store.add_records(xs + _y_records(make_record))
        connection = await SerendipityDetector(store).detect(xs)

        output = connection.to_tool_output()
        experiences = output["data"]["experiences"]
        assert {e["id"] for e in experiences} == {"y0", "y1", "y2"}
        assert all("similarity_score" in e for e in experiences)


# =============================================================================
# Failure Tests
# =============================================================================


class TestDetectFailures:
    @pytest.mark.asyncio
    async def test_store_failure_raises(self, make_record):
        detector = SerendipityDetector(BrokenStore())
        with pytest.raises(StoreError):
            await detector.detect(_x_records(make_record))

    @pytest.mark.asyncio
    async def test_shared_breaker_counts_failures(self, make_record):
        breaker = CircuitBreaker(threshold=1, name="store")
        detector = SerendipityDetector(BrokenStore(), store_breaker=breaker)

        with pytest.raises(StoreError):
            await detector.detect(_x_records(make_record))
        with pytest.raises(CircuitOpenError):
            await detector.detect(_x_records(make_record))
