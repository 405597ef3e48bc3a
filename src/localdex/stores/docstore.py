"""SQLite-backed store for documents, segments, chunks and their vectors.

One file holds everything. The connection runs in autocommit mode and every
write goes through ``_transaction()`` (``BEGIN IMMEDIATE`` ... ``COMMIT``), so a
crash or error before commit leaves the previous version of a document intact.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import numpy as np

from localdex.errors import StoreError, StoreTransactionError, ValidationError
from localdex.models import Chunk, Document, DocumentPage, SearchHit, Segment
from localdex.stores.vector_search import (
    VectorSearch,
    from_blob,
    record_writer,
    select_strategy,
    to_blob,
)

log = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        doc_id        TEXT PRIMARY KEY,
        external_id   TEXT NOT NULL UNIQUE,
        source        TEXT NOT NULL,
        uri           TEXT NOT NULL,
        title         TEXT NOT NULL,
        content_type  TEXT NOT NULL,
        size_bytes    INTEGER NOT NULL DEFAULT 0,
        content_hash  TEXT NOT NULL,
        mtime         TEXT NOT NULL,
        ingest_status TEXT NOT NULL DEFAULT 'ok',
        notes         TEXT,
        created_at    TEXT NOT NULL,
        updated_at    TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_documents_updated ON documents(updated_at, doc_id);

    CREATE TABLE IF NOT EXISTS segments (
        segment_id TEXT PRIMARY KEY,
        doc_id     TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
        position   INTEGER NOT NULL,
        kind       TEXT NOT NULL,
        page       INTEGER,
        meta       TEXT NOT NULL DEFAULT '{}',
        text       TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_segments_doc ON segments(doc_id);

    CREATE TABLE IF NOT EXISTS chunks (
        chunk_id   TEXT PRIMARY KEY,
        segment_id TEXT NOT NULL REFERENCES segments(segment_id) ON DELETE CASCADE,
        idx        INTEGER NOT NULL,
        start_char INTEGER NOT NULL,
        end_char   INTEGER NOT NULL,
        text       TEXT NOT NULL,
        embedding  BLOB NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_chunks_segment ON chunks(segment_id);

    CREATE TABLE IF NOT EXISTS index_meta (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
"""

_DOC_CHUNK_ROWIDS = """
    SELECT c.rowid FROM chunks c
    JOIN segments s ON s.segment_id = c.segment_id
    WHERE s.doc_id = ?
"""

_DOC_CHUNK_COUNT = """
    SELECT count(*) FROM chunks c
    JOIN segments s ON s.segment_id = c.segment_id
    WHERE s.doc_id = ?
"""


class DocStore:
    """Persistent index handle. Pass it explicitly to whatever needs it."""

    def __init__(self, db_path: str = "./data/localdex.db", *, vector_backend: str = "auto"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store at {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_tables()

        self._strategy: VectorSearch = select_strategy(self._conn, vector_backend)
        self._dim = self._read_dim()
        if self._dim is not None:
            with self._transaction() as conn:
                self._strategy.ensure_schema(conn, self._dim)

    def _init_tables(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)

    # -- Transactions --------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one transaction; roll back on any error."""
        with self._lock:
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreTransactionError(f"Cannot begin transaction: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreTransactionError(str(e)) from e
            except BaseException:
                self._rollback()
                raise

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")
        if self._dim is not None and self._read_dim() is None:
            # The first write of the index rolled back, and with it the vector table
            self._dim = None
            self._strategy.invalidate()

    @property
    def search_strategy(self) -> str:
        """Name of the active vector search strategy (native or fallback)."""
        return self._strategy.name

    @property
    def embedding_dim(self) -> int | None:
        return self._dim

    def _read_dim(self) -> int | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM index_meta WHERE key = 'embedding_dim'"
            ).fetchone()
        return int(row["value"]) if row else None

    def _check_dim(self, conn: sqlite3.Connection, chunks: list[Chunk]) -> None:
        """Record the embedding dimension on first write and enforce it after."""
        dims = {len(c.embedding) for c in chunks}
        if not dims:
            return
        if len(dims) > 1 or 0 in dims:
            raise StoreTransactionError(f"Inconsistent embedding dimensions: {sorted(dims)}")
        (dim,) = dims
        if self._dim is None:
            conn.execute(
                "INSERT OR REPLACE INTO index_meta (key, value) VALUES ('embedding_dim', ?)",
                (str(dim),),
            )
            self._strategy.ensure_schema(conn, dim)
            self._dim = dim
        elif dim != self._dim:
            raise StoreTransactionError(
                f"Embedding dimension {dim} does not match index dimension {self._dim}; "
                "rebuild the index to change models"
            )

    # -- Documents -----------------------------------------------------------

    def upsert_document(self, doc: Document) -> None:
        """Insert or update a document row. Never touches its segments."""
        with self._transaction() as conn:
            self._upsert_document(conn, doc)

    @staticmethod
    def _upsert_document(conn: sqlite3.Connection, doc: Document) -> None:
        # ON CONFLICT keeps the row (and its created_at); INSERT OR REPLACE
        # would delete it and cascade to the segments.
        conn.execute(
            """
            INSERT INTO documents
                (doc_id, external_id, source, uri, title, content_type, size_bytes,
                 content_hash, mtime, ingest_status, notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(doc_id) DO UPDATE SET
                external_id = excluded.external_id,
                source = excluded.source,
                uri = excluded.uri,
                title = excluded.title,
                content_type = excluded.content_type,
                size_bytes = excluded.size_bytes,
                content_hash = excluded.content_hash,
                mtime = excluded.mtime,
                ingest_status = excluded.ingest_status,
                notes = excluded.notes,
                updated_at = excluded.updated_at
            """,
            (
                doc.doc_id,
                doc.external_id,
                doc.source.value,
                doc.uri,
                doc.title,
                doc.content_type,
                doc.size_bytes,
                doc.content_hash,
                doc.mtime,
                doc.ingest_status.value,
                doc.notes,
                doc.created_at,
                doc.updated_at,
            ),
        )

    def get_document(self, doc_id: str) -> Document | None:
        """Fetch a document by ID."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM documents WHERE doc_id = ?", (doc_id,)
            ).fetchone()
        return self._row_to_doc(row) if row else None

    def get_document_by_external_id(self, external_id: str) -> Document | None:
        """Fetch a document by its external (caller- or path-derived) ID."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM documents WHERE external_id = ?", (external_id,)
            ).fetchone()
        return self._row_to_doc(row) if row else None

    def list_documents(self, limit: int = 50, cursor: str | None = None) -> DocumentPage:
        """Page through documents, most recently updated first."""
        params: list = []
        where = ""
        if cursor:
            updated_at, doc_id = _decode_cursor(cursor)
            where = "WHERE updated_at < ? OR (updated_at = ? AND doc_id < ?)"
            params = [updated_at, updated_at, doc_id]

        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM documents {where}
                ORDER BY updated_at DESC, doc_id DESC
                LIMIT ?
                """,
                [*params, limit + 1],
            ).fetchall()

        docs = [self._row_to_doc(r) for r in rows[:limit]]
        next_cursor = None
        if len(rows) > limit and docs:
            next_cursor = _encode_cursor(docs[-1].updated_at, docs[-1].doc_id)
        return DocumentPage(documents=docs, next_cursor=next_cursor)

    def delete_document(self, doc_id: str) -> int | None:
        """Delete a document with its segments, chunks and vectors.

        Returns the number of chunks removed, or None if the document did not exist.
        """
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM documents WHERE doc_id = ?", (doc_id,)
            ).fetchone()
            if not exists:
                return None
            deleted = self._delete_doc_contents(conn, doc_id)
            conn.execute("DELETE FROM documents WHERE doc_id = ?", (doc_id,))
            record_writer(conn, self._strategy.name)
        log.debug("Deleted document %s (%d chunks)", doc_id, deleted)
        return deleted

    # -- Segments and chunks -------------------------------------------------

    def write_document(
        self, doc: Document, segments: list[Segment], chunks: list[Chunk]
    ) -> int:
        """Upsert *doc* and replace all of its segments and chunks atomically.

        Returns the number of chunks now stored for the document.
        """
        with self._transaction() as conn:
            self._upsert_document(conn, doc)
            self._delete_doc_contents(conn, doc.doc_id)
            self._insert_segments(conn, segments)
            self._check_dim(conn, chunks)
            self._insert_chunks(conn, chunks)
            count = conn.execute(_DOC_CHUNK_COUNT, (doc.doc_id,)).fetchone()[0]
            record_writer(conn, self._strategy.name)
        return count

    def replace_document_segments(self, doc_id: str, segments: list[Segment]) -> None:
        """Delete-then-insert every segment of a document (chunks are dropped too)."""
        with self._transaction() as conn:
            self._delete_doc_contents(conn, doc_id)
            self._insert_segments(conn, segments)
            record_writer(conn, self._strategy.name)

    def replace_segment_chunks(self, segment_id: str, chunks: list[Chunk]) -> None:
        """Delete-then-insert every chunk of one segment."""
        with self._transaction() as conn:
            rowids = [
                r[0]
                for r in conn.execute(
                    "SELECT rowid FROM chunks WHERE segment_id = ?", (segment_id,)
                )
            ]
            self._strategy.on_delete(conn, rowids)
            conn.execute("DELETE FROM chunks WHERE segment_id = ?", (segment_id,))
            self._check_dim(conn, chunks)
            self._insert_chunks(conn, chunks)
            record_writer(conn, self._strategy.name)

    def _delete_doc_contents(self, conn: sqlite3.Connection, doc_id: str) -> int:
        rowids = [r[0] for r in conn.execute(_DOC_CHUNK_ROWIDS, (doc_id,))]
        self._strategy.on_delete(conn, rowids)
        conn.execute(
            "DELETE FROM chunks WHERE segment_id IN "
            "(SELECT segment_id FROM segments WHERE doc_id = ?)",
            (doc_id,),
        )
        conn.execute("DELETE FROM segments WHERE doc_id = ?", (doc_id,))
        return len(rowids)

    @staticmethod
    def _insert_segments(conn: sqlite3.Connection, segments: list[Segment]) -> None:
        conn.executemany(
            """
            INSERT INTO segments (segment_id, doc_id, position, kind, page, meta, text)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (s.segment_id, s.doc_id, i, s.kind.value, s.page, json.dumps(s.meta), s.text)
                for i, s in enumerate(segments)
            ],
        )

    def _insert_chunks(self, conn: sqlite3.Connection, chunks: list[Chunk]) -> None:
        indexed: list[tuple[int, bytes]] = []
        for c in chunks:
            blob = to_blob(c.embedding)
            cur = conn.execute(
                """
                INSERT INTO chunks (chunk_id, segment_id, idx, start_char, end_char, text, embedding)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (c.chunk_id, c.segment_id, c.index, c.start_char, c.end_char, c.text, blob),
            )
            indexed.append((cur.lastrowid, blob))
        if indexed:
            self._strategy.on_insert(conn, indexed)

    def get_segments(self, doc_id: str) -> list[Segment]:
        """All segments of a document in position order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM segments WHERE doc_id = ? ORDER BY position", (doc_id,)
            ).fetchall()
        return [self._row_to_segment(r) for r in rows]

    def get_chunks_for_doc(self, doc_id: str) -> list[Chunk]:
        """All chunks of a document, by segment position then chunk index."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.* FROM chunks c
                JOIN segments s ON s.segment_id = c.segment_id
                WHERE s.doc_id = ?
                ORDER BY s.position, c.idx
                """,
                (doc_id,),
            ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def chunk_count(self, doc_id: str) -> int:
        with self._lock:
            return self._conn.execute(_DOC_CHUNK_COUNT, (doc_id,)).fetchone()[0]

    def get_chunk(self, chunk_id: str) -> tuple[Chunk, Segment] | None:
        """Fetch a chunk together with its segment."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM chunks WHERE chunk_id = ?", (chunk_id,)
            ).fetchone()
            if row is None:
                return None
            seg = self._conn.execute(
                "SELECT * FROM segments WHERE segment_id = ?", (row["segment_id"],)
            ).fetchone()
        return self._row_to_chunk(row), self._row_to_segment(seg)

    # -- Search --------------------------------------------------------------

    def search(
        self, query_embedding: list[float], top_k: int = 8, doc_ids: list[str] | None = None
    ) -> list[SearchHit]:
        """Nearest chunks to *query_embedding* using the active strategy."""
        if self._dim is None:
            return []
        query = np.asarray(query_embedding, dtype=np.float32)
        if query.shape != (self._dim,):
            raise ValidationError(
                f"Query vector has dimension {query.size}, index expects {self._dim}"
            )
        with self._lock:
            return self._strategy.search(self._conn, query, top_k, doc_ids)

    # -- Diagnostics ---------------------------------------------------------

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                table: self._conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]
                for table in ("documents", "segments", "chunks")
            }

    def diagnostics(self) -> dict:
        """Store health and which vector search strategy is active."""
        return {
            "path": str(self.db_path),
            "sqlite_version": sqlite3.sqlite_version,
            "embedding_dim": self._dim,
            **self._strategy.diagnostics(),
            **self.counts(),
        }

    def is_healthy(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    # -- Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _row_to_doc(row: sqlite3.Row) -> Document:
        return Document(
            doc_id=row["doc_id"],
            external_id=row["external_id"],
            source=row["source"],
            uri=row["uri"],
            title=row["title"],
            content_type=row["content_type"],
            size_bytes=row["size_bytes"],
            content_hash=row["content_hash"],
            mtime=row["mtime"],
            ingest_status=row["ingest_status"],
            notes=row["notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> Segment:
        return Segment(
            segment_id=row["segment_id"],
            doc_id=row["doc_id"],
            kind=row["kind"],
            page=row["page"],
            meta=json.loads(row["meta"]) if row["meta"] else {},
            text=row["text"],
        )

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(
            chunk_id=row["chunk_id"],
            segment_id=row["segment_id"],
            index=row["idx"],
            start_char=row["start_char"],
            end_char=row["end_char"],
            text=row["text"],
            embedding=from_blob(row["embedding"]).tolist(),
        )


def _encode_cursor(updated_at: str, doc_id: str) -> str:
    raw = json.dumps([updated_at, doc_id]).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode_cursor(cursor: str) -> tuple[str, str]:
    try:
        updated_at, doc_id = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError, TypeError) as e:
        raise ValidationError(f"Invalid cursor: {cursor!r}") from e
    return str(updated_at), str(doc_id)
