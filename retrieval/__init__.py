"""
Discovery core: hybrid retrieval, serendipity detection and citation tracking.

DiscoveryEngine wires the pieces together around one record store and one
embedding provider, with one circuit breaker per external dependency:

    engine = DiscoveryEngine.from_config(load_config(), emitter=events)
    found = await engine.discover("lights over the lake", {"category": "ufo"})
    found["result"].records        # ranked, fused
    found["serendipity"]           # SerendipityConnection or None
    found["citations"]             # indexed Citation list
"""

import logging
from collections.abc import Mapping
from typing import Any

from config import _default_config, breaker_options, get_section, retry_options
from resilience import CircuitBreaker, describe_error

from .citations import (
    DEFAULT_TOOL_KINDS,
    CitationTracker,
    FlatRecordList,
    FlatResultList,
    NestedData,
    Unparsed,
    classify_payload,
    format_citation,
    generate_inline_citations,
    group_by_relevance,
)
from .embeddings import EmbeddingProvider, MockEmbeddings, create_provider
from .errors import EmbeddingServiceError, RecordNotFoundError, RetrievalError, StoreError
from .hybrid import HybridRetriever, rrf_fuse
from .models import (
    Citation,
    Record,
    RetrievalResult,
    ScoredRecord,
    SearchFilters,
    SerendipityConnection,
    SimilarRecord,
)
from .serendipity import SerendipityConfig, SerendipityDetector
from .store import RecordStore, SQLiteRecordStore

logger = logging.getLogger(__name__)


class DiscoveryEngine:
    """
    Facade owning the store, the embedder and their circuit breakers.

    The breakers are created here and shared by reference with every
    component that calls the same dependency.
    """

    def __init__(
        self,
        store: RecordStore,
        embedder: EmbeddingProvider,
        config: dict | None = None,
        emitter=None,
    ):
        self.config = config or _default_config()
        self.store = store
        self.embedder = embedder
        self.emitter = emitter

        self.embedding_breaker = CircuitBreaker(
            **breaker_options(self.config, "embeddings"), emitter=emitter
        )
        self.store_breaker = CircuitBreaker(
            **breaker_options(self.config, "store"), emitter=emitter
        )

        search = get_section(self.config, "search")
        self.max_results = int(search.get("max_results", 15))
        self.retriever = HybridRetriever(
            store,
            embedder,
            rrf_k=int(search.get("rrf_k", 60)),
            candidate_multiplier=int(search.get("candidate_multiplier", 3)),
            min_similarity=search.get("min_similarity"),
            embedding_breaker=self.embedding_breaker,
            store_breaker=self.store_breaker,
            retry_options=retry_options(self.config),
            emitter=emitter,
        )

        serendipity = get_section(self.config, "serendipity")
        self.serendipity_enabled = serendipity.get("enabled", True)
        self.detector = SerendipityDetector(
            store,
            SerendipityConfig.from_dict(serendipity),
            store_breaker=self.store_breaker,
        )

        citations = get_section(self.config, "citations")
        tool_kinds = None
        if citations.get("tool_kinds"):
            tool_kinds = {**DEFAULT_TOOL_KINDS, **citations["tool_kinds"]}
        self.tracker = CitationTracker(
            store,
            tool_kinds=tool_kinds,
            max_distance=float(citations.get("max_distance_km", 100.0)),
            store_breaker=self.store_breaker,
        )

    @classmethod
    def from_config(cls, config: dict | None = None, emitter=None) -> "DiscoveryEngine":
        """Build the SQLite store and embedding provider named in ``config``."""
        config = config or _default_config()
        store = SQLiteRecordStore(get_section(config, "store").get("path", "~/.discovery/records.db"))
        embedder = create_provider(get_section(config, "embeddings"), emitter=emitter)
        return cls(store, embedder, config=config, emitter=emitter)

    # ═══════════════════════════════════════════════════════════
    # OPERATIONS
    # ═══════════════════════════════════════════════════════════

    async def search(
        self,
        query: str | None = None,
        filters: SearchFilters | Mapping | None = None,
        similar_to_id: str | None = None,
        max_results: int | None = None,
    ) -> RetrievalResult:
        return await self.retriever.search(
            natural_query=query,
            filters=filters,
            similar_to_id=similar_to_id,
            max_results=max_results or self.max_results,
        )

    async def similar(self, record_id: str, max_results: int = 10) -> RetrievalResult:
        """Records closest to an existing record (the record itself excluded)."""
        return await self.retriever.search(similar_to_id=record_id, max_results=max_results)

    async def detect_serendipity(
        self, records: RetrievalResult | list, query_text: str = ""
    ) -> SerendipityConnection | None:
        if isinstance(records, RetrievalResult):
            records = records.records
        return await self.detector.detect(records, query_text)

    def track_citations(self, tool_results) -> list[Citation]:
        return self.tracker.track(tool_results)

    async def discover(
        self,
        query: str,
        filters: SearchFilters | Mapping | None = None,
        max_results: int | None = None,
        message_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Search, look for a serendipity connection and cite the sources.

        Serendipity is an extra: if detection fails the answer is returned
        without it. Citations are persisted when ``message_id`` is given.
        """
        result = await self.search(query, filters, max_results=max_results)

        connection = None
        if self.serendipity_enabled and result.records:
            try:
                connection = await self.detect_serendipity(result, query)
            except Exception as e:
                logger.warning("Serendipity detection failed, continuing without it: %s", e)

        tool_outputs = [("hybrid_search", result.to_tool_output())]
        if connection is not None:
            tool_outputs.append(("serendipity", connection.to_tool_output()))
        citations = self.tracker.track(tool_outputs)

        if message_id and citations:
            await self.tracker.save(message_id, citations)

        return {"result": result, "serendipity": connection, "citations": citations}

    def health(self) -> dict:
        """Breaker snapshots, for diagnostics."""
        return {
            "embeddings": self.embedding_breaker.snapshot().to_dict(),
            "store": self.store_breaker.snapshot().to_dict(),
        }

    def close(self):
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


__all__ = [
    "DiscoveryEngine",
    # Components
    "HybridRetriever",
    "SerendipityDetector",
    "SerendipityConfig",
    "CitationTracker",
    "rrf_fuse",
    # Payload shapes
    "classify_payload",
    "FlatRecordList",
    "FlatResultList",
    "NestedData",
    "Unparsed",
    "generate_inline_citations",
    "format_citation",
    "group_by_relevance",
    # Store and embeddings
    "RecordStore",
    "SQLiteRecordStore",
    "EmbeddingProvider",
    "MockEmbeddings",
    "create_provider",
    # Models
    "Record",
    "SearchFilters",
    "ScoredRecord",
    "RetrievalResult",
    "SimilarRecord",
    "SerendipityConnection",
    "Citation",
    # Errors
    "RetrievalError",
    "StoreError",
    "EmbeddingServiceError",
    "RecordNotFoundError",
    "describe_error",
]
