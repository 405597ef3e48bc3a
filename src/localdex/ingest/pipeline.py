"""Ingestion pipeline — orchestrates hash → segment → chunk → embed → store.

Each document is written with a single store transaction, so a reader sees
either the previous or the new version of a document, never a mix. Failures
are reported per document; one bad document never aborts the batch.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field

from localdex.embeddings import Embedder
from localdex.errors import StoreError, ValidationError
from localdex.ingest.chunker import Chunker
from localdex.models import (
    Chunk,
    DeleteResult,
    Document,
    IngestRequest,
    IngestResult,
    Segment,
    SegmentInput,
    SegmentKind,
    TextChunk,
    can_skip,
    utc_now,
)
from localdex.stores.docstore import DocStore

log = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def derive_doc_id(digest: str, external_id: str | None = None, nonce: str | None = None) -> str:
    """Stable id for a new document.

    Keyed on the external id when there is one, otherwise on the content hash
    plus a nonce so identical raw texts still become distinct documents.
    """
    if external_id:
        return f"doc_{content_hash(external_id)[:16]}"
    return f"doc_{digest[:12]}_{nonce or uuid.uuid4().hex[:8]}"


def segment_id_for(doc_id: str, position: int) -> str:
    return f"{doc_id}_s{position:04d}"


def chunk_id_for(segment_id: str, index: int) -> str:
    return f"{segment_id}_c{index:04d}"


def _check_id_list(name: str, ids: object) -> None:
    if ids is not None and (
        not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids)
    ):
        raise ValidationError(f"{name} must be a list of non-empty strings")


@dataclass
class _Planned:
    """A request that will be written, with everything computed up front."""

    position: int
    request: IngestRequest
    doc_id: str
    external_id: str
    digest: str
    existing: Document | None
    segments: list[Segment]
    pieces: list[list[TextChunk]]
    vectors: list[list[float]] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "updated" if self.existing else "inserted"


class IngestPipeline:
    """Idempotent upsert/delete of documents against one DocStore."""

    def __init__(
        self,
        store: DocStore,
        embedder: Embedder,
        chunker: Chunker,
        *,
        batch_size: int = 10,
    ):
        self.store = store
        self.embedder = embedder
        self.chunker = chunker
        self.batch_size = max(1, batch_size)

    async def ingest_one(
        self, request: IngestRequest, *, skip_if_unchanged: bool = True
    ) -> IngestResult:
        """Ingest a single document."""
        return (await self.ingest_batch([request], skip_if_unchanged=skip_if_unchanged))[0]

    async def ingest_batch(
        self, requests: list[IngestRequest], *, skip_if_unchanged: bool = True
    ) -> list[IngestResult]:
        """Upsert documents. Results come back in request order.

        Raises ValidationError only when no request carries text or segments;
        every other failure is reported on that document's result.
        """
        if not any(r.has_content for r in requests):
            raise ValidationError("No valid documents: each needs 'text' or 'segments'")

        results: list[IngestResult | None] = [None] * len(requests)
        group: list[tuple[int, IngestRequest]] = []
        group_ids: set[str] = set()

        for pos, request in enumerate(requests):
            if not request.has_content:
                results[pos] = IngestResult(
                    doc_id="",
                    status="error",
                    external_id=request.external_id,
                    error="Document has no text or segments",
                )
                continue
            # A repeated external id must see the earlier request's write
            if len(group) >= self.batch_size or (
                request.external_id and request.external_id in group_ids
            ):
                await self._process_group(group, results, skip_if_unchanged)
                group, group_ids = [], set()
            group.append((pos, request))
            if request.external_id:
                group_ids.add(request.external_id)

        if group:
            await self._process_group(group, results, skip_if_unchanged)
        return [r for r in results if r is not None]

    # -- Group processing ----------------------------------------------------

    async def _process_group(
        self,
        group: list[tuple[int, IngestRequest]],
        results: list[IngestResult | None],
        skip_if_unchanged: bool,
    ) -> None:
        planned: list[_Planned] = []
        for pos, request in group:
            outcome = self._plan(pos, request, skip_if_unchanged)
            if isinstance(outcome, IngestResult):
                results[pos] = outcome
            else:
                planned.append(outcome)
        if not planned:
            return

        # One embedding call for every chunk in the group, mapped back by position
        texts = [piece.text for item in planned for seg in item.pieces for piece in seg]
        try:
            vectors = await self.embedder.embed_many(texts)
        except Exception as e:
            log.exception("Embedding failed for %d document(s)", len(planned))
            for item in planned:
                results[item.position] = self._error(item, f"embedding failed: {e}")
            return

        offset = 0
        for item in planned:
            n = sum(len(seg) for seg in item.pieces)
            item.vectors = vectors[offset : offset + n]
            offset += n

        for item in planned:
            results[item.position] = self._persist(item)

    def _plan(
        self, pos: int, request: IngestRequest, skip_if_unchanged: bool
    ) -> _Planned | IngestResult:
        digest = content_hash(request.hash_input())
        existing = (
            self.store.get_document_by_external_id(request.external_id)
            if request.external_id
            else None
        )

        if (
            existing
            and skip_if_unchanged
            and existing.content_hash == digest
            and request.ingest_status == existing.ingest_status
            and can_skip(existing.ingest_status)
        ):
            log.info("Skipping unchanged document: %s", request.external_id)
            return IngestResult(
                doc_id=existing.doc_id,
                chunk_count=self.store.chunk_count(existing.doc_id),
                status="skipped",
                external_id=request.external_id,
            )

        doc_id = existing.doc_id if existing else derive_doc_id(digest, request.external_id)
        inputs = (
            request.segments
            if request.segments is not None
            else [SegmentInput(kind=SegmentKind.SECTION, text=request.text or "")]
        )
        segments = [
            Segment(
                segment_id=segment_id_for(doc_id, i),
                doc_id=doc_id,
                kind=s.kind,
                page=s.page,
                meta=s.meta,
                text=s.text,
            )
            for i, s in enumerate(inputs)
        ]
        return _Planned(
            position=pos,
            request=request,
            doc_id=doc_id,
            external_id=request.external_id or doc_id,
            digest=digest,
            existing=existing,
            segments=segments,
            pieces=[self.chunker.chunk(s.text) for s in segments],
        )

    def _persist(self, item: _Planned) -> IngestResult:
        request = item.request
        now = utc_now()
        doc = Document(
            doc_id=item.doc_id,
            external_id=item.external_id,
            source=request.source,
            uri=request.uri or f"raw://{item.doc_id}",
            title=request.title or "Untitled",
            content_type=request.content_type,
            size_bytes=(
                request.size_bytes
                if request.size_bytes is not None
                else len(request.hash_input().encode("utf-8"))
            ),
            content_hash=item.digest,
            mtime=request.mtime or now,
            ingest_status=request.ingest_status,
            notes=request.notes,
            created_at=item.existing.created_at if item.existing else now,
            updated_at=now,
        )

        vectors = iter(item.vectors)
        chunks = [
            Chunk(
                chunk_id=chunk_id_for(seg.segment_id, piece.index),
                segment_id=seg.segment_id,
                index=piece.index,
                start_char=piece.start,
                end_char=piece.end,
                text=piece.text,
                embedding=next(vectors),
            )
            for seg, pieces in zip(item.segments, item.pieces)
            for piece in pieces
        ]

        try:
            stored = self.store.write_document(doc, item.segments, chunks)
        except StoreError as e:
            log.error("Failed to store document %s: %s", item.doc_id, e)
            return self._error(item, str(e))

        log.info(
            "%s document %s with %d segments and %d chunks",
            item.status.capitalize(), item.doc_id, len(item.segments), stored,
        )
        return IngestResult(
            doc_id=item.doc_id,
            chunk_count=stored,
            status=item.status,
            external_id=request.external_id,
        )

    @staticmethod
    def _error(item: _Planned, message: str) -> IngestResult:
        return IngestResult(
            doc_id=item.doc_id,
            status="error",
            external_id=item.request.external_id,
            error=message,
        )

    # -- Deletion ------------------------------------------------------------

    def delete_documents(
        self,
        doc_ids: list[str] | None = None,
        external_ids: list[str] | None = None,
    ) -> DeleteResult:
        """Delete documents by id and/or external id. Unknown ids are ignored."""
        _check_id_list("doc_ids", doc_ids)
        _check_id_list("external_ids", external_ids)
        if not doc_ids and not external_ids:
            raise ValidationError("Provide doc_ids or external_ids to delete")

        targets: list[str] = []
        for external_id in external_ids or []:
            doc = self.store.get_document_by_external_id(external_id)
            if doc:
                targets.append(doc.doc_id)
        targets.extend(doc_ids or [])

        result = DeleteResult()
        for doc_id in dict.fromkeys(targets):
            deleted = self.store.delete_document(doc_id)
            if deleted is None:
                continue
            result.deleted_doc_ids.append(doc_id)
            result.deleted_chunk_count += deleted

        if result.deleted_doc_ids:
            log.info(
                "Deleted %d document(s), %d chunks",
                len(result.deleted_doc_ids), result.deleted_chunk_count,
            )
        return result

    def stats(self) -> dict[str, int]:
        counts = self.store.counts()
        return {"documents": counts["documents"], "chunks": counts["chunks"]}
