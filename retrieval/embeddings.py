"""
Embedding generation for the discovery core.

Supports multiple embedding providers with smart selection:
- LiteLLM (text-embedding-3-small, etc.) - requires OPENAI_API_KEY
- OpenAI client directly - requires OPENAI_API_KEY
- Local models (sentence-transformers) - no API key required
- Mock embeddings - deterministic, for tests and offline development

Provider selection logic (provider "auto"):
1. If model is "local" → use LocalEmbeddings
2. If model is an OpenAI model + OPENAI_API_KEY exists → use LiteLLM, then OpenAI
3. Fallback to LocalEmbeddings (sentence-transformers)
4. Final fallback to MockEmbeddings

Unlike a best-effort memory layer, a failing provider is not silently
replaced by mock vectors at call time: aembed() raises EmbeddingServiceError
so the hybrid retriever can degrade to its lexical signal.
"""

import asyncio
import hashlib
import logging
import os
import sqlite3
import struct
import threading
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"
EMBEDDING_DIM = 1536
MAX_TEXT_CHARS = 8000


# ═══════════════════════════════════════════════════════════
# EMBEDDING CACHE
# ═══════════════════════════════════════════════════════════


@dataclass
class CacheConfig:
    """Configuration for embedding cache."""

    enabled: bool = True
    max_entries: int = 10000
    ttl_seconds: int = 86400 * 30  # 30 days
    cache_path: str = "~/.discovery/embedding_cache.db"


class EmbeddingCache:
    """
    SQLite-based cache for embeddings.

    Caches embeddings by text hash to avoid redundant API calls.
    """

    def __init__(self, config: CacheConfig | None = None):
        self.config = config or CacheConfig()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            cache_path = Path(self.config.cache_path).expanduser()
            cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(cache_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._initialize_schema()
        return self._conn

    def _initialize_schema(self):
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS embedding_cache (
                text_hash TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                embedding BLOB NOT NULL,
                created_at REAL NOT NULL
            )
        """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_cache_created ON embedding_cache(created_at)"
        )
        self._conn.commit()

    def _hash_text(self, text: str, model: str) -> str:
        """Generate hash for text + model combination."""
        return hashlib.sha256(f"{model}:{text}".encode()).hexdigest()

    def get(self, text: str, model: str) -> list[float] | None:
        """Get cached embedding."""
        if not self.config.enabled:
            return None

        text_hash = self._hash_text(text, model)
        with self._lock:
            row = self.conn.execute(
                "SELECT embedding, created_at FROM embedding_cache WHERE text_hash = ?",
                (text_hash,),
            ).fetchone()

            if row is None:
                return None

            if time.time() - row["created_at"] > self.config.ttl_seconds:
                self.conn.execute("DELETE FROM embedding_cache WHERE text_hash = ?", (text_hash,))
                self.conn.commit()
                return None

        data = row["embedding"]
        return list(struct.unpack(f"{len(data) // 4}f", data))

    def put(self, text: str, model: str, embedding: list[float]):
        """Store embedding in cache."""
        if not self.config.enabled:
            return

        data = struct.pack(f"{len(embedding)}f", *embedding)
        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO embedding_cache (text_hash, model, embedding, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (self._hash_text(text, model), model, data, time.time()),
            )
            self.conn.commit()
            self._prune_if_needed()

    def _prune_if_needed(self):
        """Remove the oldest 10% when the cache exceeds its size."""
        count = self.conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]
        if count > self.config.max_entries:
            self.conn.execute(
                """
                DELETE FROM embedding_cache
                WHERE text_hash IN (
                    SELECT text_hash FROM embedding_cache
                    ORDER BY created_at ASC
                    LIMIT ?
                )
            """,
                (count // 10,),
            )
            self.conn.commit()

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

    def clear(self):
        """Clear all cached embeddings."""
        with self._lock:
            self.conn.execute("DELETE FROM embedding_cache")
            self.conn.commit()

    def close(self):
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None


# ═══════════════════════════════════════════════════════════
# EMBEDDING PROVIDERS
# ═══════════════════════════════════════════════════════════


class EmbeddingProvider:
    """
    Base class for embedding providers.

    Subclasses implement _generate(); caching and the
    ``embedding_call_end`` event are handled here.
    """

    name = "base"
    model = ""

    def __init__(self, cache: EmbeddingCache | None = None, emitter=None):
        self.cache = cache
        self.emitter = emitter

    def _generate(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def _emit(self, text_count: int, duration_ms: int, cached: bool):
        if self.emitter is None:
            return
        self.emitter.emit("embedding_call_end", {
            "provider": "cache" if cached else self.name,
            "model": self.model,
            "text_count": text_count,
            "duration_ms": duration_ms,
            "cached": cached,
        })

    def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str], batch_size: int = 100) -> list[list[float]]:
        """Generate embeddings for multiple texts, consulting the cache first."""
        texts = [t[:MAX_TEXT_CHARS] for t in texts]
        results: list[list[float] | None] = [None] * len(texts)
        uncached = []

        for i, text in enumerate(texts):
            cached = self.cache.get(text, self.model) if self.cache else None
            if cached is not None:
                results[i] = cached
            else:
                uncached.append(i)

        if len(uncached) < len(texts):
            self._emit(len(texts) - len(uncached), 0, cached=True)

        for start in range(0, len(uncached), batch_size):
            indices = uncached[start : start + batch_size]
            started = time.time()
            vectors = self._generate([texts[i] for i in indices])
            self._emit(len(indices), int((time.time() - started) * 1000), cached=False)

            for idx, vector in zip(indices, vectors):
                results[idx] = vector
                if self.cache:
                    self.cache.put(texts[idx], self.model, vector)

        return results


class LiteLLMEmbeddings(EmbeddingProvider):
    """LiteLLM-based embeddings supporting multiple providers."""

    name = "litellm"

    def __init__(self, model: str = DEFAULT_MODEL, cache: EmbeddingCache | None = None, emitter=None):
        super().__init__(cache, emitter)
        self.model = model
        self._litellm = None

    @property
    def client(self):
        if self._litellm is None:
            try:
                import litellm

                litellm.suppress_debug_info = True
                self._litellm = litellm
            except ImportError:
                raise ImportError(
                    "litellm is required for embeddings. "
                    "Install it with: pip install litellm"
                )
        return self._litellm

    def _generate(self, texts: list[str]) -> list[list[float]]:
        response = self.client.embedding(model=self.model, input=texts)
        return [d["embedding"] for d in response.data]


class OpenAIEmbeddings(EmbeddingProvider):
    """OpenAI embedding provider."""

    name = "openai"

    def __init__(self, model: str = DEFAULT_MODEL, cache: EmbeddingCache | None = None, emitter=None):
        super().__init__(cache, emitter)
        self.model = model
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from openai import OpenAI

                self._client = OpenAI()
            except ImportError:
                raise ImportError("openai package required for OpenAI embeddings")
        return self._client

    def _generate(self, texts: list[str]) -> list[list[float]]:
        response = self.client.embeddings.create(input=texts, model=self.model)
        return [d.embedding for d in response.data]


class LocalEmbeddings(EmbeddingProvider):
    """Local embedding provider using sentence-transformers."""

    name = "local"

    def __init__(self, model: str = "all-MiniLM-L6-v2", cache: EmbeddingCache | None = None, emitter=None):
        super().__init__(cache, emitter)
        self.model = model
        self._model = None

    @property
    def client(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer

                self._model = SentenceTransformer(self.model)
            except ImportError:
                raise ImportError(
                    "sentence-transformers package required for local embeddings"
                )
        return self._model

    def _generate(self, texts: list[str]) -> list[list[float]]:
        return self.client.encode(texts).tolist()


class MockEmbeddings(EmbeddingProvider):
    """Deterministic embeddings derived from the text hash (tests, offline use)."""

    name = "mock"

    def __init__(self, dim: int = EMBEDDING_DIM, cache: EmbeddingCache | None = None, emitter=None):
        super().__init__(cache, emitter)
        self.dim = dim
        self.model = f"mock-{dim}"

    def _generate(self, texts: list[str]) -> list[list[float]]:
        vectors = []
        for text in texts:
            hash_bytes = hashlib.sha256(text.encode()).digest()
            # Normalize to [-1, 1]
            vectors.append([
                (hash_bytes[i % len(hash_bytes)] / 255.0) * 2 - 1 for i in range(self.dim)
            ])
        return vectors


def create_provider(config: dict | None = None, emitter=None) -> EmbeddingProvider:
    """
    Create an embedding provider from the ``embeddings`` config section.

    Config keys: provider ("auto", "litellm", "openai", "local", "mock"),
    model, dim (mock only), cache_enabled, cache_path.
    """
    config = config or {}
    kind = config.get("provider", "auto")
    model = config.get("model", DEFAULT_MODEL)

    cache = None
    if config.get("cache_enabled", True) and kind != "mock":
        cache = EmbeddingCache(CacheConfig(
            cache_path=config.get("cache_path", CacheConfig.cache_path),
        ))

    if kind == "mock":
        return MockEmbeddings(dim=int(config.get("dim", EMBEDDING_DIM)), emitter=emitter)
    if kind == "litellm":
        return LiteLLMEmbeddings(model=model, cache=cache, emitter=emitter)
    if kind == "openai":
        return OpenAIEmbeddings(model=model, cache=cache, emitter=emitter)
    if kind == "local":
        return LocalEmbeddings(
            model=config.get("local_model", "all-MiniLM-L6-v2"), cache=cache, emitter=emitter
        )
    if kind != "auto":
        raise ValueError(f"Unknown embedding provider: {kind}")

    if model == "local":
        try:
            provider = LocalEmbeddings(cache=cache, emitter=emitter)
            provider.client  # Test
            return provider
        except Exception as e:
            logger.debug("Local embeddings unavailable: %s", e)

    # OpenAI embedding models require OPENAI_API_KEY
    if model.startswith("text-embedding") and os.environ.get("OPENAI_API_KEY"):
        try:
            provider = LiteLLMEmbeddings(model=model, cache=cache, emitter=emitter)
            provider.client  # Test
            return provider
        except Exception as e:
            logger.debug("LiteLLM embeddings unavailable for model '%s': %s", model, e)

        try:
            provider = OpenAIEmbeddings(model=model, cache=cache, emitter=emitter)
            provider.client  # Test
            return provider
        except Exception as e:
            logger.debug("OpenAI embeddings unavailable: %s", e)

    try:
        provider = LocalEmbeddings(cache=cache, emitter=emitter)
        provider.client  # Test
        return provider
    except Exception as e:
        logger.debug("Local embeddings fallback unavailable: %s", e)

    logger.warning("No embedding provider available, using mock embeddings")
    return MockEmbeddings(emitter=emitter)


async def aembed(provider: EmbeddingProvider, text: str) -> list[float]:
    """
    Embed one text off the event loop.

    Raises:
        EmbeddingServiceError: The provider failed or returned no vector.
    """
    try:
        vector = await asyncio.to_thread(provider.embed, text)
    except EmbeddingServiceError:
        raise
    except Exception as e:
        raise EmbeddingServiceError(f"{provider.name} embedding failed: {e}") from e
    if not vector:
        raise EmbeddingServiceError(f"{provider.name} returned an empty embedding")
    return list(vector)


# ═══════════════════════════════════════════════════════════
# VECTOR MATH
# ═══════════════════════════════════════════════════════════


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors (0.0 if either has zero norm)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Dimension mismatch: {a.shape} vs {b.shape}")
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def cosine_similarities(query, matrix) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    query = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(0)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


def centroid(vectors) -> list[float]:
    """Arithmetic mean of equal-length vectors."""
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()
