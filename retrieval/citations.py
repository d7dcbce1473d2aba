"""
Citation tracking: attribute an answer back to the records its tools returned.

Tool output is classified into exactly one shape before extraction:

    FlatRecordList   {"experiences": [{"id": ..., "title": ..., ...}, ...]}
    FlatResultList   {"results": [{"experience_id": ..., "score": ...}, ...]}
    NestedData       {"data": {...}}  (one of the above, one level down)
    Unparsed         anything else; yields no citations

When several keys are present, experiences wins over results, which wins
over data.

Usage:
    tracker = CitationTracker(store)
    citations = tracker.track([("semanticSearch", result.to_tool_output())])
    await tracker.save(message_id, citations)
"""

import asyncio
import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Union

from resilience import CircuitBreaker

from .models import SNIPPET_LENGTH, Citation
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE = 0.9
DEFAULT_RESULT_RELEVANCE = 0.8
CONTEXT_LENGTH = 100

SEMANTIC = "semantic"
GEOGRAPHIC = "geographic"
LEXICAL = "lexical"
PATTERN = "pattern"

DEFAULT_TOOL_KINDS = {
    "semanticSearch": SEMANTIC,
    "semantic_search": SEMANTIC,
    "hybrid_search": SEMANTIC,
    "similar_records": SEMANTIC,
    "serendipity": SEMANTIC,
    "geoSearch": GEOGRAPHIC,
    "geo_search": GEOGRAPHIC,
    "fullTextSearch": LEXICAL,
    "full_text_search": LEXICAL,
    "detectPatterns": PATTERN,
    "detect_patterns": PATTERN,
}


# ═══════════════════════════════════════════════════════════
# PAYLOAD SHAPES
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class FlatRecordList:
    """Record-like objects under ``experiences``."""

    items: tuple


@dataclass(frozen=True)
class FlatResultList:
    """Result objects referencing a record under ``results``."""

    items: tuple


@dataclass(frozen=True)
class NestedData:
    """A ``data`` mapping holding one of the flat shapes."""

    inner: Union[FlatRecordList, FlatResultList, "Unparsed"]


@dataclass(frozen=True)
class Unparsed:
    reason: str


Payload = Union[FlatRecordList, FlatResultList, NestedData, Unparsed]


def _as_mapping(raw: Any) -> Any:
    if hasattr(raw, "to_tool_output"):
        return raw.to_tool_output()
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def classify_payload(raw: Any, _nested: bool = False) -> Payload:
    """Classify tool output into exactly one payload shape."""
    data = _as_mapping(raw)
    if not isinstance(data, Mapping):
        return Unparsed(f"expected an object, got {type(data).__name__}")

    experiences = data.get("experiences")
    if isinstance(experiences, list):
        return FlatRecordList(tuple(experiences))

    results = data.get("results")
    if isinstance(results, list):
        return FlatResultList(tuple(results))

    nested = data.get("data")
    if isinstance(nested, Mapping):
        if _nested:
            return Unparsed("data nested more than one level deep")
        return NestedData(classify_payload(nested, _nested=True))

    return Unparsed("no experiences, results or data field")


# ═══════════════════════════════════════════════════════════
# SCORING
# ═══════════════════════════════════════════════════════════


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def extract_snippet(item: Mapping, max_length: int = SNIPPET_LENGTH) -> str | None:
    """Description excerpt with an ellipsis, else the title."""
    description = item.get("description")
    if isinstance(description, str) and description:
        return description[:max_length].strip() + "..."
    title = item.get("title")
    if isinstance(title, str) and title:
        return title[:max_length].strip()
    return None


# ═══════════════════════════════════════════════════════════
# TRACKER
# ═══════════════════════════════════════════════════════════


class CitationTracker:
    """
    Extracts, scores, indexes and persists citations.

    Args:
        store: RecordStore used for citation persistence (optional for
            pure extraction).
        tool_kinds: Tool name -> scoring kind (semantic, geographic,
            lexical, pattern). Unknown tools score DEFAULT_RELEVANCE.
        max_distance: Distance at which a geographic hit scores 0.
        store_breaker: Breaker shared with other store callers.
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        tool_kinds: Mapping[str, str] | None = None,
        max_distance: float = 100.0,
        store_breaker: CircuitBreaker | None = None,
    ):
        self.store = store
        self.tool_kinds = dict(DEFAULT_TOOL_KINDS if tool_kinds is None else tool_kinds)
        self.max_distance = max_distance
        self.store_breaker = store_breaker

    def relevance(self, tool_name: str, item: Mapping) -> float:
        """Relevance of a record-like item according to the tool that produced it."""
        kind = self.tool_kinds.get(tool_name)

        if kind == SEMANTIC:
            similarity = _number(item.get("similarity_score"))
            if similarity is not None:
                return _clamp(similarity)
        elif kind == GEOGRAPHIC:
            distance = _number(item.get("distance_km"))
            if distance is not None and self.max_distance > 0:
                return max(0.0, 1.0 - distance / self.max_distance)
        elif kind == LEXICAL:
            rank = _number(item.get("rank"))
            if rank is not None:
                return min(1.0, rank / 10)
        elif kind == PATTERN:
            confidence = _number(item.get("confidence"))
            if confidence is not None:
                return confidence

        return DEFAULT_RELEVANCE

    def extract(self, tool_name: str, raw: Any) -> list[Citation]:
        """Unindexed citations from one tool's output; never raises on shape problems."""
        payload = classify_payload(raw)
        if isinstance(payload, NestedData):
            payload = payload.inner

        if isinstance(payload, FlatRecordList):
            return self._from_records(tool_name, payload.items)
        if isinstance(payload, FlatResultList):
            return self._from_results(tool_name, payload.items)

        logger.debug("No citations from %s: %s", tool_name, payload.reason)
        return []

    def _from_records(self, tool_name: str, items: Iterable) -> list[Citation]:
        citations = []
        for item in items:
            if not isinstance(item, Mapping) or not item.get("id"):
                continue
            description = item.get("description")
            if not isinstance(description, str):
                description = None
            citations.append(Citation(
                experience_id=str(item["id"]),
                tool_name=tool_name,
                relevance_score=self.relevance(tool_name, item),
                snippet=extract_snippet(item),
                context_before=description[:CONTEXT_LENGTH] if description is not None else None,
                context_after=(
                    description[CONTEXT_LENGTH : 2 * CONTEXT_LENGTH]
                    if description is not None else None
                ),
            ))
        return citations

    def _from_results(self, tool_name: str, items: Iterable) -> list[Citation]:
        citations = []
        for item in items:
            if not isinstance(item, Mapping) or not item.get("experience_id"):
                continue
            # Zero counts as missing at each step
            score = (
                _number(item.get("similarity_score"))
                or _number(item.get("score"))
                or DEFAULT_RESULT_RELEVANCE
            )

            snippet = item.get("snippet")
            if not snippet and isinstance(item.get("description"), str):
                snippet = item["description"][:SNIPPET_LENGTH]
            citations.append(Citation(
                experience_id=str(item["experience_id"]),
                tool_name=tool_name,
                relevance_score=score,
                snippet=snippet or None,
            ))
        return citations

    @staticmethod
    def assign(candidates: Iterable[Citation]) -> list[Citation]:
        """
        Deduplicate by experience_id (first occurrence wins, unmodified),
        sort by relevance descending (stable) and number from 1.
        """
        unique: dict[str, Citation] = {}
        for citation in candidates:
            unique.setdefault(citation.experience_id, citation)

        ordered = sorted(unique.values(), key=lambda c: c.relevance_score, reverse=True)
        return [replace(c, citation_index=i) for i, c in enumerate(ordered, start=1)]

    def track(self, tool_results: Iterable[tuple[str, Any]]) -> list[Citation]:
        """Extract from every (tool_name, output) pair, then assign indices."""
        extracted = []
        for tool_name, raw in tool_results:
            extracted.extend(self.extract(tool_name, raw))
        citations = self.assign(extracted)
        logger.debug("Tracked %d citations from %d candidates", len(citations), len(extracted))
        return citations

    # ═══════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════

    def _require_store(self):
        if self.store is None:
            raise RuntimeError("CitationTracker has no store configured")

    async def _store_call(self, fn, *args):
        async def op():
            return await asyncio.to_thread(fn, *args)

        if self.store_breaker is None:
            return await op()
        return await self.store_breaker.call(op)

    async def save(self, message_id: str, citations: list[Citation], replace: bool = False) -> int:
        """
        Persist one row per citation against ``message_id``.

        Saving twice writes the rows twice. Pass replace=True when the turn's
        citations were recomputed; the message's previous rows are deleted first.
        """
        self._require_store()
        if replace:
            removed = await self._store_call(self.store.delete_citations, message_id)
            logger.debug("Removed %d previous citations for message %s", removed, message_id)
        if not citations:
            return 0
        rows = [c if c.message_id == message_id else _with_message(c, message_id) for c in citations]
        written = await self._store_call(self.store.save_citations, message_id, rows)
        logger.info("Saved %d citations for message %s", written, message_id)
        return written

    async def load(self, message_id: str) -> list[Citation]:
        """Citations of a message, ordered by index."""
        self._require_store()
        return await self._store_call(self.store.get_citations, message_id)


def _with_message(citation: Citation, message_id: str) -> Citation:
    return replace(citation, message_id=message_id)


# ═══════════════════════════════════════════════════════════
# PRESENTATION
# ═══════════════════════════════════════════════════════════


def generate_inline_citations(
    text: str,
    citations: Iterable[Citation],
    titles: Mapping[str, str] | None = None,
) -> str:
    """
    Insert ``[n]`` after the first mention of each cited source.

    A source is recognized by its title (from ``titles``, keyed by
    experience id) or, failing that, by its context_before text.
    """
    titles = titles or {}
    for citation in citations:
        if citation.citation_index < 1:
            continue
        needle = titles.get(citation.experience_id) or citation.context_before
        if not needle:
            continue
        match = re.search(re.escape(needle), text)
        if match is None:
            continue
        marker = f"[{citation.citation_index}]"
        text = text[: match.end()] + marker + text[match.end() :]
    return text


def format_citation(citation: Citation) -> str:
    """One-line display form: [n] "context" - snippet - (continuation)."""
    parts = []
    if citation.context_before:
        parts.append(f'"{citation.context_before}"')
    if citation.snippet:
        parts.append(citation.snippet)
    if citation.context_after:
        parts.append(f"({citation.context_after})")
    body = " - ".join(parts)
    if citation.citation_index > 0:
        return f"[{citation.citation_index}] {body}".rstrip()
    return body


def group_by_relevance(citations: Iterable[Citation]) -> dict[str, list[Citation]]:
    """Split into high (>= 0.7), medium (>= 0.4) and low relevance."""
    groups: dict[str, list[Citation]] = {"high": [], "medium": [], "low": []}
    for c in citations:
        if c.relevance_score >= 0.7:
            groups["high"].append(c)
        elif c.relevance_score >= 0.4:
            groups["medium"].append(c)
        else:
            groups["low"].append(c)
    return groups
