"""IndexService — one store handle wired to the pipeline, watcher and query engine.

Everything a front end needs goes through this object; nothing here is a
module-level singleton, so tests and tools can open as many indexes as they like.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pydantic

from localdex.config import Settings, get_settings
from localdex.embeddings import Embedder
from localdex.errors import ValidationError
from localdex.ingest.chunker import Chunker
from localdex.ingest.files import FileIngestor
from localdex.ingest.pipeline import IngestPipeline
from localdex.ingest.watcher import FileWatcher
from localdex.models import (
    ChunkResource,
    DeleteResult,
    DocumentPage,
    FileIngestResult,
    IngestRequest,
    IngestResult,
    Match,
)
from localdex.query.engine import QueryEngine
from localdex.stores.docstore import DocStore

log = logging.getLogger(__name__)

MAX_LIST_LIMIT = 1000


class IndexService:
    """Facade over a single local index."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: DocStore | None = None,
        embedder: Embedder | None = None,
    ):
        self.settings = settings
        self.store = store or DocStore(
            settings.store.path, vector_backend=settings.store.vector_backend
        )
        self.embedder = embedder or Embedder(
            settings.embedding.model_id,
            batch_size=settings.embedding.batch_size,
            cache_dir=settings.embedding.cache_dir,
        )
        self.chunker = Chunker(settings.chunker.chunk_size, settings.chunker.chunk_overlap)
        self.pipeline = IngestPipeline(
            self.store, self.embedder, self.chunker, batch_size=settings.ingest.batch_size
        )
        self.ingestor = FileIngestor(
            self.pipeline, settings.ingest, watch_dir=settings.watcher.watch_dir
        )
        self.query = QueryEngine(
            self.store,
            self.embedder,
            preview_chars=settings.search.preview_chars,
            max_top_k=settings.search.max_top_k,
        )
        self.watcher: FileWatcher | None = None

    @classmethod
    def open(cls, settings: Settings | None = None, **kwargs: Any) -> IndexService:
        """Open the index described by *settings* (default: get_settings())."""
        return cls(settings or get_settings(), **kwargs)

    async def __aenter__(self) -> IndexService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Query ---------------------------------------------------------------

    async def search(
        self, query: str, top_k: int | None = None, doc_ids: list[str] | None = None
    ) -> list[Match]:
        if top_k is None:
            top_k = self.settings.search.default_top_k
        return await self.query.search(query, top_k=top_k, doc_ids=doc_ids)

    def read_resource(self, doc_id: str, chunk_id: str) -> ChunkResource:
        return self.query.read_resource(doc_id, chunk_id)

    def resolve(self, uri: str) -> ChunkResource:
        return self.query.resolve(uri)

    def list_documents(self, limit: int = 50, cursor: str | None = None) -> DocumentPage:
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        return self.store.list_documents(limit=limit, cursor=cursor)

    # -- Mutation ------------------------------------------------------------

    async def upsert_documents(
        self, docs: list[IngestRequest | dict], *, skip_if_unchanged: bool | None = None
    ) -> list[IngestResult]:
        """Upsert raw documents. Dicts are validated into IngestRequests."""
        if not docs:
            raise ValidationError("No documents to upsert")
        try:
            requests = [
                d if isinstance(d, IngestRequest) else IngestRequest.model_validate(d)
                for d in docs
            ]
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid document: {e}") from e

        if skip_if_unchanged is None:
            skip_if_unchanged = self.settings.ingest.skip_if_unchanged
        return await self.pipeline.ingest_batch(requests, skip_if_unchanged=skip_if_unchanged)

    def delete_documents(
        self, doc_ids: list[str] | None = None, external_ids: list[str] | None = None
    ) -> DeleteResult:
        return self.pipeline.delete_documents(doc_ids=doc_ids, external_ids=external_ids)

    async def ingest_path(self, path: str | Path, *, force: bool = False) -> list[FileIngestResult]:
        """Ingest a file, or every supported file below a directory."""
        p = Path(path)
        if p.is_dir():
            return await self.ingestor.ingest_directory(p, force=force)
        if p.is_file():
            return [await self.ingestor.ingest_file(p, force=force)]
        raise ValidationError(f"Path not found: {path}")

    # -- Watcher -------------------------------------------------------------

    async def start_watcher(self, watch_dir: str | Path | None = None) -> FileWatcher:
        if self.watcher and self.watcher.is_running:
            return self.watcher
        cfg = self.settings.watcher
        directory = watch_dir or cfg.watch_dir
        if not directory:
            raise ValidationError("No watch directory configured")
        if watch_dir is not None:
            self.ingestor.watch_dir = Path(watch_dir).resolve()
        self.watcher = FileWatcher(
            self.ingestor,
            watch_dir=directory,
            debounce_ms=cfg.debounce_ms,
            max_concurrency=cfg.max_concurrency,
            initial_scan=cfg.initial_scan,
        )
        await self.watcher.start()
        return self.watcher

    async def stop_watcher(self) -> None:
        if self.watcher:
            await self.watcher.stop()

    async def rescan(self) -> list[FileIngestResult]:
        """Re-ingest the watch dir; through the watcher's pool when it is running."""
        if self.watcher and self.watcher.is_running:
            return await self.watcher.force_rescan()
        directory = self.settings.watcher.watch_dir
        if not directory:
            raise ValidationError("No watch directory configured")
        return await self.ingestor.ingest_directory(directory)

    # -- Diagnostics ---------------------------------------------------------

    def diagnostics(self) -> dict:
        return {
            "healthy": self.store.is_healthy(),
            "store": self.store.diagnostics(),
            "embedding": {
                "model_id": self.embedder.model_id,
                "initialized": self.embedder.is_initialized,
                "dimension": self.embedder.dimension,
            },
            "chunker": {
                "chunk_size": self.chunker.chunk_size,
                "chunk_overlap": self.chunker.chunk_overlap,
            },
            "watcher": (
                self.watcher.stats().model_dump()
                if self.watcher and self.watcher.is_running
                else None
            ),
        }

    async def close(self) -> None:
        """Drain the watcher, then release the store."""
        await self.stop_watcher()
        self.store.close()
