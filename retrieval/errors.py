"""
Exceptions raised by the retrieval side of the discovery core.
"""

from resilience.errors import NETWORK, RESOURCE_EXHAUSTION, UPSTREAM, VALIDATION, ResilienceError


class RetrievalError(ResilienceError):
    """Both ranking signals failed; no result could be produced."""

    category = RESOURCE_EXHAUSTION
    code = "SEARCH_FAILED"


class StoreError(ResilienceError):
    """The record store failed to answer a query."""

    category = NETWORK
    code = "STORE_ERROR"


class EmbeddingServiceError(ResilienceError):
    """The embedding provider failed to produce a vector."""

    category = UPSTREAM
    code = "EMBEDDING_ERROR"


class RecordNotFoundError(ResilienceError, LookupError):
    """A referenced record does not exist or has no stored embedding."""

    category = VALIDATION
    code = "RECORD_NOT_FOUND"

    def __init__(self, record_id: str, reason: str = "not found"):
        self.record_id = record_id
        super().__init__(f"Record {record_id!r} {reason}")
