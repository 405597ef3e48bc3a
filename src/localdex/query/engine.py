"""Query engine — embed a query, search the store, address results as doc:// URIs."""

from __future__ import annotations

import logging
import re

from localdex.embeddings import Embedder
from localdex.errors import ResourceNotFoundError, ValidationError
from localdex.models import ChunkResource, Match
from localdex.stores.docstore import DocStore
from localdex.stores.vector_search import PREVIEW_CHARS, make_preview

log = logging.getLogger(__name__)

_RESOURCE_URI = re.compile(r"^doc://(?P<doc_id>[^#/]+)#(?P<chunk_id>.+)$")


def format_resource_uri(doc_id: str, chunk_id: str) -> str:
    return f"doc://{doc_id}#{chunk_id}"


def parse_resource_uri(uri: str) -> tuple[str, str]:
    """Split ``doc://<doc_id>#<chunk_id>`` into its two ids."""
    m = _RESOURCE_URI.match(uri.strip())
    if not m:
        raise ValidationError(f"Not a resource URI (expected doc://<doc_id>#<chunk_id>): {uri!r}")
    return m.group("doc_id"), m.group("chunk_id")


class QueryEngine:
    """Nearest-chunk search and chunk lookup over one DocStore."""

    def __init__(
        self,
        store: DocStore,
        embedder: Embedder,
        *,
        preview_chars: int = PREVIEW_CHARS,
        max_top_k: int = 100,
    ):
        self.store = store
        self.embedder = embedder
        self.preview_chars = preview_chars
        self.max_top_k = max_top_k

    def _validate(self, query: str, top_k: int, doc_ids: list[str] | None) -> None:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        if isinstance(top_k, bool) or not isinstance(top_k, int):
            raise ValidationError("top_k must be an integer")
        if not 1 <= top_k <= self.max_top_k:
            raise ValidationError(f"top_k must be between 1 and {self.max_top_k}")
        if doc_ids is not None and (
            not isinstance(doc_ids, list)
            or not all(isinstance(d, str) and d for d in doc_ids)
        ):
            raise ValidationError("doc_ids must be a list of non-empty strings")

    async def search(
        self, query: str, top_k: int = 8, doc_ids: list[str] | None = None
    ) -> list[Match]:
        """Return at most *top_k* matches, best first.

        An empty index (or an empty doc_ids filter) gives an empty list.
        """
        self._validate(query, top_k, doc_ids)
        if self.store.embedding_dim is None or doc_ids == []:
            return []

        query_vec = await self.embedder.embed_one(query)
        hits = self.store.search(query_vec, top_k=top_k, doc_ids=doc_ids)
        log.debug("Search %r returned %d hits", query, len(hits))

        return [
            Match(
                chunk_id=h.chunk_id,
                doc_id=h.doc_id,
                score=h.score,
                preview=make_preview(h.text, self.preview_chars),
                resource=format_resource_uri(h.doc_id, h.chunk_id),
                title=h.title,
                source_badge=h.source_badge,
            )
            for h in hits[:top_k]
        ]

    def read_resource(self, doc_id: str, chunk_id: str) -> ChunkResource:
        """Full chunk text, offsets, segment info and parent document.

        Raises ResourceNotFoundError if the chunk does not exist under *doc_id*.
        """
        found = self.store.get_chunk(chunk_id)
        if found is None:
            raise ResourceNotFoundError(doc_id, chunk_id)
        chunk, segment = found
        if segment.doc_id != doc_id:
            raise ResourceNotFoundError(doc_id, chunk_id)
        document = self.store.get_document(doc_id)
        if document is None:
            raise ResourceNotFoundError(doc_id, chunk_id)

        return ChunkResource(
            resource=format_resource_uri(doc_id, chunk_id),
            chunk_id=chunk.chunk_id,
            segment_id=segment.segment_id,
            text=chunk.text,
            start_char=chunk.start_char,
            end_char=chunk.end_char,
            segment_kind=segment.kind,
            page=segment.page,
            segment_meta=segment.meta,
            document=document,
        )

    def resolve(self, uri: str) -> ChunkResource:
        """read_resource() for a ``doc://`` URI."""
        return self.read_resource(*parse_resource_uri(uri))
