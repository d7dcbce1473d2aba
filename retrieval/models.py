"""
Core data models for the discovery core.

Design principles:
- Records are owned by the store; this package only reads them
- SearchFilters are immutable and carry the one filter predicate
- Results are plain dataclasses that serialize to tool-output payloads
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from resilience.errors import InvalidInputError

SNIPPET_LENGTH = 200
DESCRIPTION_LENGTH = 500


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO date or datetime (or pass a datetime through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise InvalidInputError(f"Invalid date: {value!r}")


def _naive_utc(dt: datetime | None) -> datetime | None:
    """Comparable form of a datetime: naive, in UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class Record:
    """
    A submitted narrative record ("experience").

    ``attributes`` maps an attribute key (e.g. "shape") to the values the
    record carries for it; ``has_witness`` is set when the record lists at
    least one witness.
    """

    id: str
    title: str
    text: str = ""
    category: str = ""
    embedding: list[float] | None = None
    tags: list[str] = field(default_factory=list)
    location_text: str = ""
    occurred_at: datetime | None = None
    created_at: datetime | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)
    has_witness: bool = False

    @property
    def description(self) -> str:
        return self.text[:DESCRIPTION_LENGTH]

    def recency_key(self) -> tuple:
        """Sort key: more recent occurrence first, then more recent creation."""
        occurred = _naive_utc(self.occurred_at)
        created = _naive_utc(self.created_at)
        return (
            occurred is not None,
            occurred or datetime.min,
            created is not None,
            created or datetime.min,
        )

    def to_dict(self) -> dict:
        """Record-like payload, as tools return it."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
            "location_text": self.location_text,
            "date_occurred": self.occurred_at.isoformat() if self.occurred_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "attributes": {k: list(v) for k, v in self.attributes.items()},
        }


def _frozen_values(mapping: Mapping | None, name: str) -> dict[str, frozenset[str]]:
    if not mapping:
        return {}
    if not isinstance(mapping, Mapping):
        raise InvalidInputError(f"{name} must be a mapping of attribute -> values")
    result = {}
    for key, values in mapping.items():
        if isinstance(values, str):
            values = [values]
        if not isinstance(values, Iterable):
            raise InvalidInputError(f"{name}[{key!r}] must be a list of values")
        result[str(key)] = frozenset(str(v) for v in values)
    return result


def _string_set(values: Any, name: str) -> frozenset[str]:
    if not values:
        return frozenset()
    if isinstance(values, str):
        return frozenset([values])
    if not isinstance(values, Iterable):
        raise InvalidInputError(f"{name} must be a list of strings")
    return frozenset(str(v) for v in values)


@dataclass(frozen=True)
class SearchFilters:
    """
    Hard pre-filter for one retrieval call.

    - category: exact match
    - tags: record must carry at least one of them
    - exclude_tags: record must carry none of them
    - attributes_include: every listed attribute must have one of its values
    - attributes_exclude: no listed attribute may have any of its values
    - date_from / date_to: inclusive bounds on occurred_at
    - location: case-insensitive substring of location_text
    - witnesses_only: record must have a witness
    """

    category: str | None = None
    tags: frozenset[str] = frozenset()
    exclude_tags: frozenset[str] = frozenset()
    attributes_include: Mapping[str, frozenset[str]] = field(default_factory=dict)
    attributes_exclude: Mapping[str, frozenset[str]] = field(default_factory=dict)
    date_from: datetime | None = None
    date_to: datetime | None = None
    location: str | None = None
    witnesses_only: bool = False

    @classmethod
    def from_dict(cls, data: Mapping | None) -> "SearchFilters":
        """
        Parse tool-style filter input.

        Accepts the nested shape search tools produce:
            {"category": "ufo", "tags": [...], "exclude": {"tags": [...]},
             "dateRange": {"from": "2020-01-01", "to": "2021-01-01"},
             "attributes": {"include": {...}, "exclude": {...}},
             "location": "Berlin", "witnessesOnly": true}
        as well as the flat field names of this class.
        """
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise InvalidInputError("filters must be a mapping")

        exclude = data.get("exclude") or {}
        date_range = data.get("dateRange") or data.get("date_range") or {}
        attributes = data.get("attributes") or {}
        if not all(isinstance(x, Mapping) for x in (exclude, date_range, attributes)):
            raise InvalidInputError("exclude, dateRange and attributes must be mappings")

        date_from = parse_datetime(data.get("date_from", date_range.get("from")))
        date_to = parse_datetime(data.get("date_to", date_range.get("to")))
        if date_from and date_to and _naive_utc(date_from) > _naive_utc(date_to):
            raise InvalidInputError("date_from is after date_to")

        category = data.get("category")
        location = data.get("location")
        return cls(
            category=str(category) if category else None,
            tags=_string_set(data.get("tags"), "tags"),
            exclude_tags=_string_set(data.get("exclude_tags", exclude.get("tags")), "exclude.tags"),
            attributes_include=_frozen_values(
                data.get("attributes_include", attributes.get("include")), "attributes.include"
            ),
            attributes_exclude=_frozen_values(
                data.get("attributes_exclude", attributes.get("exclude")), "attributes.exclude"
            ),
            date_from=date_from,
            date_to=date_to,
            location=str(location) if location else None,
            witnesses_only=bool(data.get("witnesses_only", data.get("witnessesOnly", False))),
        )

    @property
    def is_empty(self) -> bool:
        return self == SearchFilters()

    def matches(self, record: Record) -> bool:
        """True if the record passes every filter."""
        if self.category and record.category != self.category:
            return False

        record_tags = set(record.tags)
        if self.tags and not (self.tags & record_tags):
            return False
        if self.exclude_tags and (self.exclude_tags & record_tags):
            return False

        if self.date_from or self.date_to:
            occurred = _naive_utc(record.occurred_at)
            if occurred is None:
                return False
            if self.date_from and occurred < _naive_utc(self.date_from):
                return False
            if self.date_to and occurred > _naive_utc(self.date_to):
                return False

        if self.location:
            if self.location.lower() not in (record.location_text or "").lower():
                return False

        if self.witnesses_only and not record.has_witness:
            return False

        for key, allowed in self.attributes_include.items():
            if not allowed & set(record.attributes.get(key, ())):
                return False
        for key, banned in self.attributes_exclude.items():
            if banned & set(record.attributes.get(key, ())):
                return False

        return True


@dataclass
class ScoredRecord:
    """A record with its per-signal scores from one retrieval call."""

    record: Record
    vector_score: float = 0.0
    lexical_score: float = 0.0
    fused_score: float = 0.0
    vector_rank: int | None = None
    lexical_rank: int | None = None

    @property
    def id(self) -> str:
        return self.record.id

    def to_dict(self) -> dict:
        d = self.record.to_dict()
        d.update({
            "vector_score": self.vector_score,
            "fts_score": self.lexical_score,
            "combined_score": self.fused_score,
        })
        # Lexical-only hits carry no similarity
        if self.vector_rank is not None:
            d["similarity_score"] = self.vector_score
        return d


@dataclass
class RetrievalResult:
    """Ranked output of the hybrid retriever."""

    records: list[ScoredRecord] = field(default_factory=list)
    degraded: bool = False
    has_more: bool = False
    query: str | None = None
    signals: list[str] = field(default_factory=list)  # ranking lists that contributed
    failed_signals: dict[str, str] = field(default_factory=dict)  # signal -> error

    def __len__(self) -> int:
        return len(self.records)

    def is_empty(self) -> bool:
        return not self.records

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]

    def to_tool_output(self) -> dict:
        """Payload shape the citation tracker recognizes as a record list."""
        return {
            "experiences": [r.to_dict() for r in self.records],
            "count": len(self.records),
            "has_more": self.has_more,
            "degraded": self.degraded,
        }


@dataclass
class SimilarRecord:
    """A record returned by a nearest-neighbour query, with its similarity."""

    record: Record
    similarity: float

    def to_dict(self) -> dict:
        d = self.record.to_dict()
        d["similarity_score"] = self.similarity
        d["excerpt"] = self.record.text[:SNIPPET_LENGTH]
        return d


@dataclass
class SerendipityConnection:
    """An unexpected cross-category cluster close to the query's results."""

    target_category: str
    primary_category: str
    aggregate_similarity: float
    explanation: str
    records: list[SimilarRecord] = field(default_factory=list)  # representatives only
    count: int = 0  # full cluster size

    def to_tool_output(self) -> dict:
        return {
            "data": {
                "experiences": [r.to_dict() for r in self.records],
                "target_category": self.target_category,
                "primary_category": self.primary_category,
                "similarity": self.aggregate_similarity,
                "explanation": self.explanation,
                "count": self.count,
            }
        }


@dataclass
class Citation:
    """Attribution of an answer to one source record."""

    experience_id: str
    tool_name: str
    relevance_score: float
    snippet: str | None = None
    context_before: str | None = None
    context_after: str | None = None
    citation_index: int = 0  # 0 until assigned
    message_id: str | None = None

    def __post_init__(self):
        self.relevance_score = min(1.0, max(0.0, float(self.relevance_score)))

    def to_dict(self) -> dict:
        return {
            "experience_id": self.experience_id,
            "tool_name": self.tool_name,
            "citation_index": self.citation_index,
            "relevance_score": self.relevance_score,
            "snippet": self.snippet,
            "context_before": self.context_before,
            "context_after": self.context_after,
            "message_id": self.message_id,
        }
