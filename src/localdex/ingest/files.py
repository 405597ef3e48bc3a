"""File ingestion — filters, extracts and upserts files from disk.

A file's identity is its normalized absolute path, so re-ingesting a changed
file updates the same document and deleting the file removes it.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from datetime import datetime, timezone
from pathlib import Path

from localdex.config import IngestConfig
from localdex.errors import ValidationError
from localdex.ingest.extractors import extract_file, get_content_type, title_from_filename
from localdex.ingest.pipeline import IngestPipeline
from localdex.models import (
    DeleteResult,
    FileIngestResult,
    IngestRequest,
    IngestStatus,
    SourceKind,
)

log = logging.getLogger(__name__)

# Files ingested concurrently by ingest_directory
DIRECTORY_BATCH = 5

EMPTY_FILE = "Empty file"


def normalize_path(path: str | Path) -> str:
    """Absolute, forward-slash form of *path* (the document's external id)."""
    return Path(path).expanduser().resolve().as_posix()


class FileIngestor:
    """Turns files on disk into documents via an IngestPipeline."""

    def __init__(
        self,
        pipeline: IngestPipeline,
        config: IngestConfig | None = None,
        *,
        watch_dir: str | Path | None = None,
    ):
        self.pipeline = pipeline
        self.config = config or IngestConfig()
        self.watch_dir = Path(watch_dir).resolve() if watch_dir else None
        self._extensions = {e.lower() for e in self.config.supported_extensions}

    # -- Filters -------------------------------------------------------------

    def is_supported(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self._extensions

    def is_ignored(self, path: str | Path, base: str | Path | None = None) -> bool:
        """Match ignore patterns against the file name and the path relative to
        *base* (default: the watch dir)."""
        p = Path(path)
        candidates = [p.name]
        root = Path(base).resolve() if base else self.watch_dir
        if root:
            try:
                candidates.append(p.resolve().relative_to(root).as_posix())
            except ValueError:
                pass
        for pattern in self.config.ignore_patterns:
            for candidate in candidates:
                if fnmatch.fnmatch(candidate, pattern):
                    return True
                # "dir/**" also covers anything below dir
                if pattern.endswith("/**") and (
                    candidate == pattern[:-3] or candidate.startswith(pattern[:-2])
                ):
                    return True
        return False

    def _skip_reason(self, path: Path) -> str | None:
        if not path.exists():
            return "File does not exist"
        if not path.is_file():
            return "Not a regular file"
        if not self.is_supported(path):
            return f"Unsupported extension: {path.suffix or '(none)'}"
        if self.is_ignored(path):
            return "Matches an ignore pattern"
        if path.stat().st_size == 0:
            return EMPTY_FILE
        return None

    # -- Ingestion -----------------------------------------------------------

    async def ingest_file(self, path: str | Path, *, force: bool = False) -> FileIngestResult:
        """Ingest one file. Never raises for per-file problems."""
        p = Path(path)
        external_id = normalize_path(p)

        reason = self._skip_reason(p)
        if reason == EMPTY_FILE:
            log.info("Skipping empty file %s; previously indexed content is kept", p)
        elif reason:
            log.debug("Skipping %s: %s", p, reason)
        if reason:
            return FileIngestResult(
                doc_id="", status="skipped", external_id=external_id,
                file_path=external_id, error=reason,
            )

        stat = p.stat()
        mtime = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat()
        base = dict(
            external_id=external_id,
            source=SourceKind.FILE,
            uri=Path(external_id).as_uri(),
            size_bytes=stat.st_size,
            mtime=mtime,
        )

        if stat.st_size > self.config.max_file_size:
            log.warning("File too large: %s (%d bytes)", p, stat.st_size)
            request = IngestRequest(
                segments=[],
                title=title_from_filename(p),
                content_type=get_content_type(p),
                ingest_status=IngestStatus.TOO_LARGE,
                notes=f"File is {stat.st_size} bytes, exceeds limit of {self.config.max_file_size}",
                **base,
            )
        else:
            extraction = await asyncio.to_thread(
                extract_file,
                p,
                split_on_headings=self.config.docx_split_on_headings,
                min_text_chars=self.config.min_text_chars,
                notes_max_chars=self.config.notes_max_chars,
            )
            request = IngestRequest(
                segments=extraction.segments,
                title=extraction.title or title_from_filename(p),
                ingest_status=extraction.extraction_status,
                notes=extraction.notes,
                metadata={"file_name": p.name, "extension": p.suffix, **extraction.metadata},
                content_type=extraction.content_type,
                **base,
            )

        try:
            result = await self.pipeline.ingest_one(
                request, skip_if_unchanged=self.config.skip_if_unchanged and not force
            )
        except ValidationError as e:
            return FileIngestResult(
                doc_id="", status="error", external_id=external_id,
                file_path=external_id, error=str(e),
            )

        return FileIngestResult(
            **result.model_dump(),
            file_path=external_id,
            ingest_status=request.ingest_status,
        )

    def find_files(self, directory: str | Path) -> list[Path]:
        """Supported, non-ignored files below *directory* in sorted order."""
        root = Path(directory)
        if not root.is_dir():
            raise ValidationError(f"Not a directory: {directory}")
        return sorted(
            p for p in root.rglob("*")
            if p.is_file() and self.is_supported(p) and not self.is_ignored(p, root)
        )

    async def ingest_directory(
        self, directory: str | Path, *, force: bool = False
    ) -> list[FileIngestResult]:
        """Ingest every supported file below *directory*, a few at a time."""
        files = self.find_files(directory)
        log.info("Found %d files to ingest in %s", len(files), directory)

        results: list[FileIngestResult] = []
        for i in range(0, len(files), DIRECTORY_BATCH):
            batch = files[i : i + DIRECTORY_BATCH]
            results.extend(
                await asyncio.gather(*(self.ingest_file(f, force=force) for f in batch))
            )
            log.info("Processed %d/%d files", min(i + DIRECTORY_BATCH, len(files)), len(files))
        return results

    def delete_file(self, path: str | Path) -> DeleteResult:
        """Remove the document for *path*. A path never ingested is a no-op."""
        return self.pipeline.delete_documents(external_ids=[normalize_path(path)])
