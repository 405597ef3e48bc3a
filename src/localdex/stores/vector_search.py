"""Vector search strategies over the chunk table.

Two implementations share one interface and one result shape:

- ``NativeVectorSearch``: sqlite-vec ``vec0`` index, score = clamp(1 - distance).
- ``BruteForceSearch``: load candidate vectors, numpy cosine, score = raw cosine.

The store picks one at construction time with ``select_strategy``; callers
never branch on which is active.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod

import numpy as np
import sqlite_vec

from localdex.errors import StoreError
from localdex.models import SearchHit

log = logging.getLogger(__name__)

PREVIEW_CHARS = 240

# sqlite-vec refuses KNN queries with k above this
_VEC0_MAX_K = 4096

# index_meta key naming the strategy of the last chunk write
LAST_WRITER_KEY = "last_writer"

_HIT_COLUMNS = """
    c.chunk_id, c.segment_id, s.doc_id, s.kind, s.page, s.meta, c.text,
    d.title, d.content_type
"""


def make_preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    """First *limit* characters, with an ellipsis when truncated."""
    return text[:limit] + ("..." if len(text) > limit else "")


def source_badge(
    title: str | None,
    content_type: str | None,
    kind: str | None,
    page: int | None,
    meta: dict | None,
) -> str:
    """Short human label for where a chunk came from (file · page/section)."""
    name = title or "Unknown"
    if kind == "page" and page:
        return f"{name} · p.{page}"
    if meta and meta.get("heading"):
        return f"{name} · § {meta['heading']}"
    return name


def record_writer(conn: sqlite3.Connection, name: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", (LAST_WRITER_KEY, name)
    )


def to_blob(vec) -> bytes:
    """Serialize a vector as little-endian float32 (sqlite-vec's format)."""
    return np.asarray(vec, dtype="<f4").tobytes()


def from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4")


def _row_to_hit(row: sqlite3.Row, score: float) -> SearchHit:
    meta = json.loads(row["meta"]) if row["meta"] else {}
    return SearchHit(
        chunk_id=row["chunk_id"],
        segment_id=row["segment_id"],
        doc_id=row["doc_id"],
        score=score,
        preview=make_preview(row["text"]),
        text=row["text"],
        title=row["title"],
        source_badge=source_badge(
            row["title"], row["content_type"], row["kind"], row["page"], meta
        ),
    )


def _doc_filter(doc_ids: list[str] | None) -> tuple[str, list]:
    if not doc_ids:
        return "", []
    placeholders = ",".join("?" for _ in doc_ids)
    return f"s.doc_id IN ({placeholders})", list(doc_ids)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class VectorSearch(ABC):
    """Strategy interface. All methods run under the store's lock."""

    name: str

    def ensure_schema(self, conn: sqlite3.Connection, dim: int) -> None:
        """Prepare any index structures once the embedding dimension is known."""

    def on_insert(self, conn: sqlite3.Connection, rows: list[tuple[int, bytes]]) -> None:
        """Index newly inserted chunk rows given as (rowid, embedding blob)."""

    def on_delete(self, conn: sqlite3.Connection, rowids: list[int]) -> None:
        """Drop index entries for chunk rows about to be deleted."""

    def invalidate(self) -> None:
        """Forget prepared schema state (after the transaction creating it rolled back)."""

    @abstractmethod
    def search(
        self,
        conn: sqlite3.Connection,
        query: np.ndarray,
        top_k: int,
        doc_ids: list[str] | None = None,
    ) -> list[SearchHit]:
        """Return at most *top_k* hits, best first, ties in insertion order."""

    def diagnostics(self) -> dict:
        return {"search_strategy": self.name}


# ---------------------------------------------------------------------------
# Native (sqlite-vec)
# ---------------------------------------------------------------------------

class NativeVectorSearch(VectorSearch):
    """KNN over a ``vec0`` virtual table keyed by the chunk rowid."""

    name = "native"

    def __init__(self, version: str | None = None):
        self.version = version
        self._ready = False

    def ensure_schema(self, conn: sqlite3.Connection, dim: int) -> None:
        if self._ready:
            return
        conn.execute(
            "CREATE VIRTUAL TABLE IF NOT EXISTS chunk_vectors "
            f"USING vec0(embedding float[{int(dim)}] distance_metric=cosine)"
        )
        indexed = conn.execute("SELECT count(*) FROM chunk_vectors").fetchone()[0]
        stored = conn.execute("SELECT count(*) FROM chunks").fetchone()[0]
        row = conn.execute(
            "SELECT value FROM index_meta WHERE key = ?", (LAST_WRITER_KEY,)
        ).fetchone()
        last_writer = row[0] if row else None
        # Chunk rowids are reused, so equal counts prove nothing after a fallback write
        if indexed != stored or last_writer not in (None, self.name):
            log.warning(
                "Vector index out of sync (%d indexed, %d chunks, last writer %s); rebuilding",
                indexed, stored, last_writer,
            )
            conn.execute("DELETE FROM chunk_vectors")
            conn.execute(
                "INSERT INTO chunk_vectors(rowid, embedding) SELECT rowid, embedding FROM chunks"
            )
            record_writer(conn, self.name)
        self._ready = True

    def invalidate(self) -> None:
        self._ready = False

    def on_insert(self, conn: sqlite3.Connection, rows: list[tuple[int, bytes]]) -> None:
        conn.executemany("INSERT INTO chunk_vectors(rowid, embedding) VALUES (?, ?)", rows)

    def on_delete(self, conn: sqlite3.Connection, rowids: list[int]) -> None:
        if not self._ready or not rowids:
            return
        conn.executemany("DELETE FROM chunk_vectors WHERE rowid = ?", [(r,) for r in rowids])

    def search(
        self,
        conn: sqlite3.Connection,
        query: np.ndarray,
        top_k: int,
        doc_ids: list[str] | None = None,
    ) -> list[SearchHit]:
        if not self._ready:
            return []
        blob = to_blob(query)
        where, params = _doc_filter(doc_ids)

        if where:
            # KNN can't pre-filter by document; score the candidate set directly
            rows = conn.execute(
                f"""
                SELECT {_HIT_COLUMNS}, vec_distance_cosine(c.embedding, ?) AS distance
                FROM chunks c
                JOIN segments s ON s.segment_id = c.segment_id
                LEFT JOIN documents d ON d.doc_id = s.doc_id
                WHERE {where}
                ORDER BY distance ASC, c.rowid ASC
                LIMIT ?
                """,
                [blob, *params, top_k],
            ).fetchall()
        else:
            rows = conn.execute(
                f"""
                WITH knn AS (
                    SELECT rowid, distance FROM chunk_vectors
                    WHERE embedding MATCH ? AND k = ?
                )
                SELECT {_HIT_COLUMNS}, knn.distance AS distance
                FROM knn
                JOIN chunks c ON c.rowid = knn.rowid
                JOIN segments s ON s.segment_id = c.segment_id
                LEFT JOIN documents d ON d.doc_id = s.doc_id
                ORDER BY knn.distance ASC, c.rowid ASC
                """,
                [blob, min(top_k, _VEC0_MAX_K)],
            ).fetchall()

        return [
            _row_to_hit(r, max(0.0, min(1.0, 1.0 - float(r["distance"])))) for r in rows
        ][:top_k]

    def diagnostics(self) -> dict:
        return {"search_strategy": self.name, "sqlite_vec_version": self.version}


# ---------------------------------------------------------------------------
# Fallback (brute force)
# ---------------------------------------------------------------------------

class BruteForceSearch(VectorSearch):
    """In-process cosine similarity over every candidate chunk."""

    name = "fallback"

    def __init__(self, reason: str | None = None):
        self.reason = reason

    def search(
        self,
        conn: sqlite3.Connection,
        query: np.ndarray,
        top_k: int,
        doc_ids: list[str] | None = None,
    ) -> list[SearchHit]:
        where, params = _doc_filter(doc_ids)
        rows = conn.execute(
            f"""
            SELECT {_HIT_COLUMNS}, c.embedding
            FROM chunks c
            JOIN segments s ON s.segment_id = c.segment_id
            LEFT JOIN documents d ON d.doc_id = s.doc_id
            {"WHERE " + where if where else ""}
            ORDER BY c.rowid ASC
            """,
            params,
        ).fetchall()
        if not rows:
            return []

        matrix = np.vstack([from_blob(r["embedding"]) for r in rows])
        q = np.asarray(query, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * float(np.linalg.norm(q))
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ q / norms, 0.0)

        # stable: equal scores keep insertion (rowid) order
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [_row_to_hit(rows[i], float(scores[i])) for i in order]

    def diagnostics(self) -> dict:
        return {"search_strategy": self.name, "fallback_reason": self.reason}


# ---------------------------------------------------------------------------
# Capability probe
# ---------------------------------------------------------------------------

def probe_native(conn: sqlite3.Connection) -> tuple[str | None, str | None]:
    """Try to load sqlite-vec into *conn*. Returns (version, error)."""
    try:
        conn.enable_load_extension(True)
        try:
            sqlite_vec.load(conn)
        finally:
            conn.enable_load_extension(False)
        version = conn.execute("SELECT vec_version()").fetchone()[0]
    except (AttributeError, sqlite3.Error) as e:
        # AttributeError: interpreter built without extension loading
        return None, str(e)
    return version, None


def select_strategy(conn: sqlite3.Connection, backend: str = "auto") -> VectorSearch:
    """Pick the search strategy once, based on what this SQLite build supports."""
    if backend == "fallback":
        return BruteForceSearch(reason="configured")

    version, error = probe_native(conn)
    if version is not None:
        log.info("sqlite-vec %s loaded; using native vector search", version)
        return NativeVectorSearch(version)

    if backend == "native":
        raise StoreError(f"Native vector search requested but sqlite-vec failed to load: {error}")

    log.warning("sqlite-vec unavailable (%s); using brute-force vector search", error)
    return BruteForceSearch(reason=error)
