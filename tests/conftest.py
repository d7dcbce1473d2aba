"""
Shared fixtures for the discovery test suite.

Provides temp stores, deterministic embedders, fake clocks and
environment variable management.
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

# Ensure the project root is on sys.path so tests can import project modules
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from retrieval.embeddings import EmbeddingProvider  # noqa: E402
from retrieval.models import Record  # noqa: E402
from retrieval.store import SQLiteRecordStore  # noqa: E402


class VectorEmbedder(EmbeddingProvider):
    """Embedder returning fixed vectors per text; unknown text gets ``default``."""

    name = "fixed"
    model = "fixed-3"

    def __init__(self, vectors: dict[str, list[float]] | None = None, default=None, emitter=None):
        super().__init__(emitter=emitter)
        self.vectors = vectors or {}
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.calls: list[str] = []
        self.failures_left = 0

    def _generate(self, texts: list[str]) -> list[list[float]]:
        self.calls.extend(texts)
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("connection refused")
        return [list(self.vectors.get(t, self.default)) for t in texts]


class BrokenEmbedder(EmbeddingProvider):
    """Embedder whose service is always down."""

    name = "broken"
    model = "broken"

    def __init__(self):
        super().__init__()
        self.calls = 0

    def _generate(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        raise ConnectionError("503 Service Unavailable")


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that is cleaned up after the test."""
    return tmp_path


@pytest.fixture
def make_record():
    """Factory for records with sensible defaults."""

    def factory(record_id: str, title: str = "", **kwargs) -> Record:
        kwargs.setdefault("created_at", datetime(2024, 1, 1))
        return Record(id=record_id, title=title or f"Record {record_id}", **kwargs)

    return factory


@pytest.fixture
def store(tmp_path):
    """Empty SQLite record store in a temp directory."""
    s = SQLiteRecordStore(str(tmp_path / "records.db"))
    yield s
    s.close()


@pytest.fixture
def corpus(store, make_record):
    """
    Small corpus with 3-dimensional embeddings:

    r1  ufo             [1, 0, 0]      "Glowing triangle over the lake"
    r2  ball_lightning  [0.9, 0.1, 0]  "Ball of light in the storm"
    r3  ufo             [0, 1, 0]      "Triangle shaped craft"
    r4  ghost           [0, 0, 1]      "Footsteps in the attic"
    """
    records = [
        make_record(
            "r1", "Glowing triangle over the lake", text="Three lights hovered over the lake.",
            category="ufo", embedding=[1.0, 0.0, 0.0], tags=["lights"],
            location_text="Lake Tahoe", occurred_at=datetime(2023, 6, 1), has_witness=True,
        ),
        make_record(
            "r2", "Ball of light in the storm", text="A glowing sphere drifted through the window.",
            category="ball_lightning", embedding=[0.9, 0.1, 0.0], tags=["storm"],
            occurred_at=datetime(2022, 8, 14),
        ),
        make_record(
            "r3", "Triangle shaped craft", text="A black craft passed silently overhead.",
            category="ufo", embedding=[0.0, 1.0, 0.0], tags=["craft"],
            location_text="Phoenix", occurred_at=datetime(2021, 3, 13),
        ),
        make_record(
            "r4", "Footsteps in the attic", text="Every night at three we heard footsteps.",
            category="ghost", embedding=[0.0, 0.0, 1.0], tags=["house"],
            occurred_at=datetime(2020, 10, 31),
        ),
    ]
    store.add_records(records)
    return records


@pytest.fixture
def embedder():
    return VectorEmbedder({
        "triangle lake": [1.0, 0.0, 0.0],
        "craft": [0.0, 1.0, 0.0],
    })


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def clean_env():
    """Temporarily clear discovery-related env vars to avoid side effects."""
    keys = [
        "OPENAI_API_KEY",
        "DISCOVERY_CONFIG", "DISCOVERY_DB", "DISCOVERY_EMBEDDINGS", "DISCOVERY_OUTBOX_URL",
    ]
    saved = {}
    for key in keys:
        if key in os.environ:
            saved[key] = os.environ.pop(key)
    yield
    # Restore
    for key, val in saved.items():
        os.environ[key] = val
    for key in keys:
        if key not in saved and key in os.environ:
            del os.environ[key]


@pytest.fixture
def mock_openai_key():
    """Set a fake OPENAI_API_KEY for tests that need provider detection."""
    with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test-key-123"}):
        yield
