"""Tests for localdex.stores.docstore."""

from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest

from localdex.errors import StoreTransactionError, ValidationError
from localdex.models import Chunk, Document, Segment, SegmentKind
from localdex.stores.docstore import DocStore


def make_doc(doc_id: str = "doc-1", external_id: str = "/tmp/test.txt", **kw) -> Document:
    return Document(
        doc_id=doc_id,
        external_id=external_id,
        uri=f"file://{external_id}",
        title=kw.pop("title", "Test Doc"),
        content_hash=kw.pop("content_hash", "abc123"),
        **kw,
    )


def make_segment(doc_id: str = "doc-1", pos: int = 0, text: str = "Hello world") -> Segment:
    return Segment(segment_id=f"{doc_id}_s{pos:04d}", doc_id=doc_id, text=text)


def make_chunks(segment: Segment, vectors: list[list[float]]) -> list[Chunk]:
    return [
        Chunk(
            chunk_id=f"{segment.segment_id}_c{i:04d}",
            segment_id=segment.segment_id,
            index=i,
            start_char=0,
            end_char=len(segment.text),
            text=segment.text,
            embedding=vec,
        )
        for i, vec in enumerate(vectors)
    ]


@pytest.fixture
def sample_doc():
    return make_doc()


def test_upsert_and_get_document(store, sample_doc):
    store.upsert_document(sample_doc)
    retrieved = store.get_document("doc-1")
    assert retrieved is not None
    assert retrieved.title == "Test Doc"
    assert retrieved.external_id == "/tmp/test.txt"


def test_get_document_by_external_id(store, sample_doc):
    store.upsert_document(sample_doc)
    retrieved = store.get_document_by_external_id("/tmp/test.txt")
    assert retrieved is not None
    assert retrieved.doc_id == "doc-1"


def test_get_missing_document(store):
    assert store.get_document("nonexistent") is None
    assert store.get_document_by_external_id("nonexistent") is None


def test_upsert_document_replaces_and_keeps_created_at(store, sample_doc):
    store.upsert_document(sample_doc)
    created = store.get_document("doc-1").created_at

    updated = sample_doc.model_copy(update={"title": "Updated Title", "created_at": "2999-01-01"})
    store.upsert_document(updated)

    page = store.list_documents()
    assert len(page.documents) == 1
    assert page.documents[0].title == "Updated Title"
    assert page.documents[0].created_at == created


def test_write_document_replaces_segments_and_chunks(store, sample_doc):
    seg_a = make_segment(text="old one")
    seg_b = make_segment(pos=1, text="old two")
    store.write_document(sample_doc, [seg_a, seg_b], make_chunks(seg_a, [[1, 0, 0]]) + make_chunks(seg_b, [[0, 1, 0]]))

    seg_new = make_segment(text="new text")
    count = store.write_document(sample_doc, [seg_new], make_chunks(seg_new, [[0, 0, 1], [1, 1, 0]]))

    assert count == 2
    assert [s.text for s in store.get_segments("doc-1")] == ["new text"]
    chunks = store.get_chunks_for_doc("doc-1")
    assert [c.chunk_id for c in chunks] == ["doc-1_s0000_c0000", "doc-1_s0000_c0001"]
    assert store.counts() == {"documents": 1, "segments": 1, "chunks": 2}


def test_get_chunk_returns_segment(store, sample_doc):
    seg = Segment(
        segment_id="doc-1_s0000", doc_id="doc-1", kind=SegmentKind.PAGE, page=3, text="Hello"
    )
    store.write_document(sample_doc, [seg], make_chunks(seg, [[1.0, 0.0]]))

    chunk, segment = store.get_chunk("doc-1_s0000_c0000")
    assert chunk.text == "Hello"
    assert chunk.embedding == pytest.approx([1.0, 0.0])
    assert segment.page == 3
    assert store.get_chunk("missing") is None


def test_delete_document_cascades(store, sample_doc):
    seg = make_segment()
    store.write_document(sample_doc, [seg], make_chunks(seg, [[1, 0], [0, 1]]))

    assert store.delete_document("doc-1") == 2
    assert store.get_document("doc-1") is None
    assert store.counts() == {"documents": 0, "segments": 0, "chunks": 0}
    assert store.search([1.0, 0.0], top_k=5) == []


def test_delete_missing_document_is_noop(store):
    assert store.delete_document("nope") is None


def test_dimension_is_recorded_and_enforced(store, sample_doc):
    seg = make_segment()
    store.write_document(sample_doc, [seg], make_chunks(seg, [[1, 0, 0]]))
    assert store.embedding_dim == 3

    other = make_doc("doc-2", "/tmp/other.txt")
    seg2 = make_segment("doc-2")
    with pytest.raises(StoreTransactionError, match="dimension"):
        store.write_document(other, [seg2], make_chunks(seg2, [[1, 0]]))
    # Rolled back: doc-2 was never written
    assert store.get_document("doc-2") is None

    with pytest.raises(ValidationError):
        store.search([1.0, 0.0], top_k=1)


def test_dimension_survives_reopen(tmp_path, sample_doc):
    path = str(tmp_path / "reopen.db")
    store = DocStore(path)
    seg = make_segment()
    store.write_document(sample_doc, [seg], make_chunks(seg, [[0.6, 0.8]]))
    store.close()

    reopened = DocStore(path)
    try:
        assert reopened.embedding_dim == 2
        hits = reopened.search([0.6, 0.8], top_k=1)
        assert [h.chunk_id for h in hits] == ["doc-1_s0000_c0000"]
    finally:
        reopened.close()


def test_failed_write_keeps_previous_version(store, sample_doc):
    seg = make_segment(text="version one")
    store.write_document(sample_doc, [seg], make_chunks(seg, [[1, 0]]))

    seg2 = make_segment(text="version two")
    with patch.object(
        DocStore, "_insert_chunks", side_effect=sqlite3.OperationalError("disk I/O error")
    ):
        with pytest.raises(StoreTransactionError):
            store.write_document(
                sample_doc.model_copy(update={"content_hash": "new"}),
                [seg2],
                make_chunks(seg2, [[0, 1]]),
            )

    assert store.get_document("doc-1").content_hash == "abc123"
    assert [s.text for s in store.get_segments("doc-1")] == ["version one"]
    assert len(store.get_chunks_for_doc("doc-1")) == 1


def test_first_write_rollback_forgets_dimension(store, sample_doc):
    seg = make_segment()
    with patch.object(
        DocStore, "_insert_chunks", side_effect=sqlite3.OperationalError("boom")
    ):
        with pytest.raises(StoreTransactionError):
            store.write_document(sample_doc, [seg], make_chunks(seg, [[1, 0, 0]]))

    assert store.embedding_dim is None
    # A different dimension is accepted after the failed first write
    store.write_document(sample_doc, [seg], make_chunks(seg, [[1, 0]]))
    assert store.embedding_dim == 2


def test_list_documents_paginates(store):
    for i in range(5):
        store.upsert_document(
            make_doc(f"doc-{i}", f"/tmp/{i}.txt", updated_at=f"2024-01-0{i + 1}T00:00:00+00:00")
        )

    first = store.list_documents(limit=2)
    assert [d.doc_id for d in first.documents] == ["doc-4", "doc-3"]
    assert first.next_cursor

    second = store.list_documents(limit=2, cursor=first.next_cursor)
    assert [d.doc_id for d in second.documents] == ["doc-2", "doc-1"]

    third = store.list_documents(limit=2, cursor=second.next_cursor)
    assert [d.doc_id for d in third.documents] == ["doc-0"]
    assert third.next_cursor is None


def test_list_documents_rejects_bad_cursor(store):
    with pytest.raises(ValidationError):
        store.list_documents(cursor="not-a-cursor!!")


def test_search_on_empty_store(store):
    assert store.search([1.0, 0.0], top_k=3) == []


def test_diagnostics(store):
    diag = store.diagnostics()
    assert diag["search_strategy"] in ("native", "fallback")
    assert diag["documents"] == 0
    assert store.is_healthy()
