"""Tests for localdex.stores.vector_search (both strategies behind one interface)."""

from __future__ import annotations

import math
import sqlite3

import pytest

from localdex.errors import StoreError
from localdex.models import Chunk, Document, Segment, SegmentKind
from localdex.stores.docstore import DocStore
from localdex.stores.vector_search import (
    BruteForceSearch,
    make_preview,
    probe_native,
    select_strategy,
    source_badge,
)


def native_available() -> bool:
    conn = sqlite3.connect(":memory:")
    try:
        return probe_native(conn)[0] is not None
    finally:
        conn.close()


requires_native = pytest.mark.skipif(
    not native_available(), reason="sqlite-vec cannot be loaded in this interpreter"
)

VECTORS = {
    "a": [1.0, 0.0, 0.0],
    "b": [0.8, 0.6, 0.0],
    "c": [0.0, 1.0, 0.0],
    "d": [0.0, 0.0, 1.0],
}


def populate(store: DocStore) -> None:
    """Two documents: doc-x holds a, b; doc-y holds c, d (in that insert order)."""
    for doc_id, keys in (("doc-x", "ab"), ("doc-y", "cd")):
        doc = Document(
            doc_id=doc_id,
            external_id=doc_id,
            uri=f"raw://{doc_id}",
            title=doc_id.upper(),
            content_hash=doc_id,
        )
        seg = Segment(
            segment_id=f"{doc_id}_s0000",
            doc_id=doc_id,
            kind=SegmentKind.PAGE,
            page=1,
            text=" ".join(keys),
        )
        chunks = [
            Chunk(
                chunk_id=f"{doc_id}_s0000_c{i:04d}",
                segment_id=seg.segment_id,
                index=i,
                start_char=2 * i,
                end_char=2 * i + 1,
                text=key,
                embedding=VECTORS[key],
            )
            for i, key in enumerate(keys)
        ]
        store.write_document(doc, [seg], chunks)


@pytest.fixture(params=["fallback", pytest.param("native", marks=requires_native)])
def backend_store(request, tmp_path):
    db = DocStore(str(tmp_path / f"{request.param}.db"), vector_backend=request.param)
    populate(db)
    yield db
    db.close()


def test_strategy_is_reported(backend_store):
    assert backend_store.diagnostics()["search_strategy"] in ("native", "fallback")


def test_results_ordered_by_score(backend_store):
    hits = backend_store.search([1.0, 0.0, 0.0], top_k=4)
    assert [h.text for h in hits] == ["a", "b", "c", "d"][: len(hits)]
    assert hits[0].score == pytest.approx(1.0, abs=1e-5)
    assert hits[1].score == pytest.approx(0.8, abs=1e-5)
    assert all(x.score >= y.score for x, y in zip(hits, hits[1:]))


def test_top_k_is_exact(backend_store):
    assert len(backend_store.search([1.0, 0.0, 0.0], top_k=2)) == 2
    assert len(backend_store.search([1.0, 0.0, 0.0], top_k=50)) == 4


def test_doc_filter(backend_store):
    hits = backend_store.search([1.0, 0.0, 0.0], top_k=10, doc_ids=["doc-y"])
    assert {h.doc_id for h in hits} == {"doc-y"}
    assert [h.text for h in hits] == ["c", "d"]


def test_ties_keep_insertion_order(backend_store):
    # c and d are both orthogonal to a; c was inserted first
    hits = backend_store.search([1.0, 0.0, 0.0], top_k=4)
    assert [h.chunk_id for h in hits[2:]] == ["doc-y_s0000_c0000", "doc-y_s0000_c0001"]


def test_hit_carries_badge_and_preview(backend_store):
    hit = backend_store.search([0.0, 0.0, 1.0], top_k=1)[0]
    assert hit.chunk_id == "doc-y_s0000_c0001"
    assert hit.segment_id == "doc-y_s0000"
    assert hit.title == "DOC-Y"
    assert hit.source_badge == "DOC-Y · p.1"
    assert hit.preview == "d"


@requires_native
def test_native_and_fallback_agree(tmp_path):
    native = DocStore(str(tmp_path / "n.db"), vector_backend="native")
    fallback = DocStore(str(tmp_path / "f.db"), vector_backend="fallback")
    try:
        populate(native)
        populate(fallback)
        query = [0.6, 0.5, 0.1]
        n_hits = native.search(query, top_k=4)
        f_hits = fallback.search(query, top_k=4)
        assert [h.chunk_id for h in n_hits] == [h.chunk_id for h in f_hits]
        for n, f in zip(n_hits, f_hits):
            assert n.score == pytest.approx(max(0.0, f.score), abs=1e-4)
    finally:
        native.close()
        fallback.close()


@requires_native
def test_native_index_rebuilds_when_out_of_sync(tmp_path):
    path = str(tmp_path / "sync.db")
    # Written without the extension: no vector table at all
    fallback = DocStore(path, vector_backend="fallback")
    populate(fallback)
    fallback.close()

    native = DocStore(path, vector_backend="native")
    try:
        hits = native.search([0.0, 1.0, 0.0], top_k=1)
        assert [h.text for h in hits] == ["c"]
    finally:
        native.close()


def test_forced_fallback_reason():
    conn = sqlite3.connect(":memory:")
    try:
        strategy = select_strategy(conn, "fallback")
    finally:
        conn.close()
    assert isinstance(strategy, BruteForceSearch)
    assert strategy.diagnostics() == {"search_strategy": "fallback", "fallback_reason": "configured"}


def test_native_required_but_unavailable(monkeypatch):
    monkeypatch.setattr(
        "localdex.stores.vector_search.probe_native", lambda conn: (None, "no extension support")
    )
    conn = sqlite3.connect(":memory:")
    try:
        with pytest.raises(StoreError, match="no extension support"):
            select_strategy(conn, "native")
        # auto degrades instead of raising
        assert isinstance(select_strategy(conn, "auto"), BruteForceSearch)
    finally:
        conn.close()


def test_zero_query_vector_scores_zero(tmp_path):
    db = DocStore(str(tmp_path / "zero.db"), vector_backend="fallback")
    try:
        populate(db)
        hits = db.search([0.0, 0.0, 0.0], top_k=4)
        assert all(h.score == 0.0 for h in hits)
        assert not any(math.isnan(h.score) for h in hits)
    finally:
        db.close()


def test_make_preview():
    assert make_preview("short") == "short"
    long = "x" * 300
    assert make_preview(long) == "x" * 240 + "..."
    assert make_preview(long, 10) == "x" * 10 + "..."


def test_source_badge():
    assert source_badge("Deck", None, "page", 4, {}) == "Deck · p.4"
    assert source_badge("Spec", None, "section", None, {"heading": "Intro"}) == "Spec · § Intro"
    assert source_badge(None, None, "section", None, {}) == "Unknown"


def write_doc(store: DocStore, doc_id: str, items: list[tuple[str, list[float]]]) -> None:
    """Write *doc_id* with one segment holding one chunk per (text, vector)."""
    doc = Document(doc_id=doc_id, external_id=doc_id, uri=f"raw://{doc_id}", content_hash=doc_id)
    seg = Segment(segment_id=f"{doc_id}_s0000", doc_id=doc_id, text=" ".join(t for t, _ in items))
    chunks = [
        Chunk(
            chunk_id=f"{seg.segment_id}_c{i:04d}",
            segment_id=seg.segment_id,
            index=i,
            start_char=0,
            end_char=len(text),
            text=text,
            embedding=vec,
        )
        for i, (text, vec) in enumerate(items)
    ]
    store.write_document(doc, [seg], chunks)


def last_writer(store: DocStore) -> str | None:
    row = store._conn.execute("SELECT value FROM index_meta WHERE key = 'last_writer'").fetchone()
    return row[0] if row else None


def test_writes_record_the_active_strategy(tmp_path):
    db = DocStore(str(tmp_path / "writer.db"), vector_backend="fallback")
    try:
        write_doc(db, "d", [("x", [1.0, 0.0, 0.0])])
        assert last_writer(db) == "fallback"
    finally:
        db.close()


@requires_native
def test_native_rebuilds_after_fallback_rewrite_with_same_chunk_count(tmp_path):
    path = str(tmp_path / "stale.db")
    native = DocStore(path, vector_backend="native")
    write_doc(native, "d", [("old-x", [1.0, 0.0, 0.0]), ("old-y", [0.0, 1.0, 0.0])])
    native.close()

    # Same number of chunks, so the chunk rowids are reused
    fallback = DocStore(path, vector_backend="fallback")
    write_doc(fallback, "d", [("new-z", [0.0, 0.0, 1.0]), ("new-y", [0.0, 1.0, 0.0])])
    expected = [h.text for h in fallback.search([0.0, 0.0, 1.0], top_k=1)]
    fallback.close()

    reopened = DocStore(path, vector_backend="native")
    try:
        assert expected == ["new-z"]
        assert [h.text for h in reopened.search([0.0, 0.0, 1.0], top_k=1)] == expected
        assert last_writer(reopened) == "native"
    finally:
        reopened.close()
