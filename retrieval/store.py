"""
Record store - the boundary between the discovery core and record storage.

RecordStore is the protocol the retriever, detector and citation tracker
depend on. SQLiteRecordStore is the reference implementation: records with
struct-packed embeddings, cosine nearest-neighbour search in numpy, BM25
lexical search, and the message_citations table.

The store is synchronous; async callers go through asyncio.to_thread and
the connection is guarded by a lock.
"""

import json
import logging
import math
import re
import sqlite3
import struct
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .embeddings import cosine_similarities
from .errors import StoreError
from .models import Citation, Record, SearchFilters, parse_datetime

logger = logging.getLogger(__name__)

BM25_K1 = 1.2
BM25_B = 0.75

_TOKEN_RE = re.compile(r"[\w]+", re.UNICODE)
_STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "is",
    "it", "of", "on", "or", "that", "the", "to", "was", "were", "with",
})


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens without stopwords or single characters."""
    return [
        t for t in _TOKEN_RE.findall((text or "").lower())
        if len(t) > 1 and t not in _STOPWORDS
    ]


def serialize_embedding(embedding: list[float] | None) -> bytes | None:
    """Serialize embedding to bytes for SQLite storage."""
    if embedding is None:
        return None
    return struct.pack(f"{len(embedding)}f", *embedding)


def deserialize_embedding(data: bytes | None) -> list[float] | None:
    """Deserialize embedding from bytes."""
    if data is None:
        return None
    return list(struct.unpack(f"{len(data) // 4}f", data))


@runtime_checkable
class RecordStore(Protocol):
    """Operations the discovery core needs from record storage."""

    def vector_search(
        self,
        embedding: list[float],
        filters: SearchFilters | None = None,
        limit: int = 45,
        min_similarity: float | None = None,
    ) -> list[tuple[Record, float]]:
        """Nearest neighbours by cosine similarity, best first."""
        ...

    def lexical_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 45,
    ) -> list[tuple[Record, float]]:
        """Ranked full-text matches; a blank query returns filtered records by recency."""
        ...

    def get_record(self, record_id: str) -> Record | None: ...

    def get_records(self, record_ids: list[str]) -> list[Record]: ...

    def save_citations(self, message_id: str, citations: list[Citation]) -> int: ...

    def delete_citations(self, message_id: str) -> int: ...

    def get_citations(self, message_id: str) -> list[Citation]: ...


class SQLiteRecordStore:
    """
    SQLite-based record store.

    Usage:
        store = SQLiteRecordStore("~/.discovery/records.db")
        store.add_record(Record(id="r1", title="Lights over the lake", ...))
        hits = store.vector_search(query_vector, SearchFilters(category="ufo"), limit=45)
    """

    def __init__(self, db_path: str = "~/.discovery/records.db"):
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._create_tables()
        return self._conn

    def _create_tables(self):
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS records (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT '',
                embedding BLOB,
                tags TEXT NOT NULL DEFAULT '[]',
                location_text TEXT NOT NULL DEFAULT '',
                occurred_at TEXT,
                created_at TEXT,
                attributes TEXT NOT NULL DEFAULT '{}',
                has_witness INTEGER NOT NULL DEFAULT 0
            );
            CREATE INDEX IF NOT EXISTS idx_records_category ON records(category);

            CREATE TABLE IF NOT EXISTS message_citations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL,
                experience_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                citation_index INTEGER NOT NULL,
                relevance_score REAL NOT NULL,
                snippet TEXT,
                context_before TEXT,
                context_after TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_citations_message ON message_citations(message_id);
            """
        )
        self._conn.commit()

    def _execute(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                rows = self.conn.execute(sql, params).fetchall()
                self.conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Record store query failed: {e}") from e
        return rows

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # ═══════════════════════════════════════════════════════════
    # RECORDS
    # ═══════════════════════════════════════════════════════════

    def add_record(self, record: Record):
        """Insert or replace one record."""
        self.add_records([record])

    def add_records(self, records: list[Record]):
        rows = [
            (
                r.id,
                r.title,
                r.text,
                r.category,
                serialize_embedding(r.embedding),
                json.dumps(list(r.tags)),
                r.location_text,
                r.occurred_at.isoformat() if r.occurred_at else None,
                (r.created_at or datetime.now()).isoformat(),
                json.dumps(r.attributes),
                1 if r.has_witness else 0,
            )
            for r in records
        ]
        with self._lock:
            try:
                self.conn.executemany(
                    """
                    INSERT OR REPLACE INTO records
                    (id, title, text, category, embedding, tags, location_text,
                     occurred_at, created_at, attributes, has_witness)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    rows,
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to save records: {e}") from e

    def count(self) -> int:
        return self._execute("SELECT COUNT(*) FROM records")[0][0]

    def get_record(self, record_id: str) -> Record | None:
        rows = self._execute("SELECT * FROM records WHERE id = ?", (record_id,))
        return self._row_to_record(rows[0]) if rows else None

    def get_records(self, record_ids: list[str]) -> list[Record]:
        """Fetch records by id, in the order given; unknown ids are skipped."""
        if not record_ids:
            return []
        placeholders = ",".join("?" * len(record_ids))
        rows = self._execute(f"SELECT * FROM records WHERE id IN ({placeholders})", list(record_ids))
        by_id = {row["id"]: self._row_to_record(row) for row in rows}
        return [by_id[i] for i in record_ids if i in by_id]

    def _row_to_record(self, row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            title=row["title"],
            text=row["text"],
            category=row["category"],
            embedding=deserialize_embedding(row["embedding"]),
            tags=json.loads(row["tags"] or "[]"),
            location_text=row["location_text"],
            occurred_at=parse_datetime(row["occurred_at"]),
            created_at=parse_datetime(row["created_at"]),
            attributes=json.loads(row["attributes"] or "{}"),
            has_witness=bool(row["has_witness"]),
        )

    def _candidates(self, filters: SearchFilters | None, require_embedding: bool = False) -> list[Record]:
        """Records narrowed in SQL by category, then by the full filter predicate."""
        conditions = []
        params: list[Any] = []
        if require_embedding:
            conditions.append("embedding IS NOT NULL")
        if filters and filters.category:
            conditions.append("category = ?")
            params.append(filters.category)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        records = [self._row_to_record(r) for r in self._execute(f"SELECT * FROM records {where}", params)]
        if filters:
            records = [r for r in records if filters.matches(r)]
        return records

    # ═══════════════════════════════════════════════════════════
    # SEARCH
    # ═══════════════════════════════════════════════════════════

    def vector_search(
        self,
        embedding: list[float],
        filters: SearchFilters | None = None,
        limit: int = 45,
        min_similarity: float | None = None,
    ) -> list[tuple[Record, float]]:
        """Nearest neighbours by cosine similarity; mismatched dimensions are skipped."""
        candidates = [
            r for r in self._candidates(filters, require_embedding=True)
            if len(r.embedding) == len(embedding)
        ]
        if not candidates:
            return []

        sims = cosine_similarities(embedding, [r.embedding for r in candidates])
        scored = [(r, float(s)) for r, s in zip(candidates, sims)]
        if min_similarity is not None:
            scored = [(r, s) for r, s in scored if s >= min_similarity]

        scored.sort(key=lambda x: (x[1], x[0].recency_key()), reverse=True)
        return scored[:limit]

    def lexical_search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int = 45,
    ) -> list[tuple[Record, float]]:
        """
        BM25 over title, text, tags and location.

        Only records sharing at least one term with the query are returned.
        A blank query returns the filtered records by recency with score 0.
        """
        candidates = self._candidates(filters)
        query_terms = tokenize(query or "")

        if not query_terms:
            candidates.sort(key=lambda r: r.recency_key(), reverse=True)
            return [(r, 0.0) for r in candidates[:limit]]

        docs = [
            Counter(tokenize(" ".join([r.title, r.text, " ".join(r.tags), r.location_text])))
            for r in candidates
        ]
        if not docs:
            return []

        n_docs = len(docs)
        avg_len = sum(sum(d.values()) for d in docs) / n_docs or 1.0
        df = Counter()
        for d in docs:
            df.update(set(d))

        scored = []
        for record, doc in zip(candidates, docs):
            doc_len = sum(doc.values())
            score = 0.0
            for term in query_terms:
                tf = doc.get(term, 0)
                if not tf:
                    continue
                idf = math.log(1 + (n_docs - df[term] + 0.5) / (df[term] + 0.5))
                score += idf * tf * (BM25_K1 + 1) / (
                    tf + BM25_K1 * (1 - BM25_B + BM25_B * doc_len / avg_len)
                )
            if score > 0:
                scored.append((record, score))

        scored.sort(key=lambda x: (x[1], x[0].recency_key()), reverse=True)
        return scored[:limit]

    # ═══════════════════════════════════════════════════════════
    # CITATIONS
    # ═══════════════════════════════════════════════════════════

    def save_citations(self, message_id: str, citations: list[Citation]) -> int:
        """Insert one row per citation; returns the number of rows written."""
        if not citations:
            return 0
        now = datetime.now().isoformat()
        rows = [
            (
                message_id,
                c.experience_id,
                c.tool_name,
                c.citation_index,
                c.relevance_score,
                c.snippet,
                c.context_before,
                c.context_after,
                now,
            )
            for c in citations
        ]
        with self._lock:
            try:
                self.conn.executemany(
                    """
                    INSERT INTO message_citations
                    (message_id, experience_id, tool_name, citation_index, relevance_score,
                     snippet, context_before, context_after, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    rows,
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to save citations: {e}") from e
        return len(rows)

    def delete_citations(self, message_id: str) -> int:
        with self._lock:
            try:
                cur = self.conn.execute(
                    "DELETE FROM message_citations WHERE message_id = ?", (message_id,)
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to delete citations: {e}") from e
        return cur.rowcount

    def get_citations(self, message_id: str) -> list[Citation]:
        rows = self._execute(
            "SELECT * FROM message_citations WHERE message_id = ? ORDER BY citation_index, id",
            (message_id,),
        )
        return [
            Citation(
                experience_id=row["experience_id"],
                tool_name=row["tool_name"],
                citation_index=row["citation_index"],
                relevance_score=row["relevance_score"],
                snippet=row["snippet"],
                context_before=row["context_before"],
                context_after=row["context_after"],
                message_id=row["message_id"],
            )
            for row in rows
        ]
