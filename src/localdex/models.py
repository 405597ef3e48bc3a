"""Shared domain models used across the system."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string (the store's timestamp format)."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class IngestStatus(str, Enum):
    """Stored status of a document's last ingestion."""

    OK = "ok"
    SKIPPED = "skipped"
    NEEDS_OCR = "needs_ocr"
    TOO_LARGE = "too_large"
    ERROR = "error"


class IngestOutcome(str, Enum):
    """What happened when a document was (re-)ingested."""

    EXTRACTED = "extracted"
    UNCHANGED = "unchanged"
    ENCRYPTED = "encrypted"
    TOO_LARGE = "too_large"
    INSUFFICIENT_TEXT = "insufficient_text"
    FAILED = "failed"


_OUTCOME_STATUS = {
    IngestOutcome.EXTRACTED: IngestStatus.OK,
    IngestOutcome.ENCRYPTED: IngestStatus.SKIPPED,
    IngestOutcome.TOO_LARGE: IngestStatus.TOO_LARGE,
    IngestOutcome.INSUFFICIENT_TEXT: IngestStatus.NEEDS_OCR,
    IngestOutcome.FAILED: IngestStatus.ERROR,
}

# (current status or None for a new document, outcome) -> next status.
# UNCHANGED is only a valid outcome for a document that last ingested OK:
# anything else is re-processed even when its hash matches.
STATUS_TRANSITIONS: dict[tuple[IngestStatus | None, IngestOutcome], IngestStatus] = {
    (current, outcome): status
    for current in (None, *IngestStatus)
    for outcome, status in _OUTCOME_STATUS.items()
}
STATUS_TRANSITIONS[(IngestStatus.OK, IngestOutcome.UNCHANGED)] = IngestStatus.OK


def next_status(current: IngestStatus | None, outcome: IngestOutcome) -> IngestStatus:
    """Look up the status a document moves to. Raises ValueError if not allowed."""
    try:
        return STATUS_TRANSITIONS[(current, outcome)]
    except KeyError:
        name = current.value if current else "new"
        raise ValueError(f"No transition from {name!r} on {outcome.value!r}") from None


def can_skip(current: IngestStatus | None) -> bool:
    """True if a document in *current* status may be skipped when unchanged."""
    return (current, IngestOutcome.UNCHANGED) in STATUS_TRANSITIONS


class SegmentKind(str, Enum):
    PAGE = "page"
    SECTION = "section"


class SourceKind(str, Enum):
    FILE = "file"
    URL = "url"
    RAW = "raw"


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """One logical source item."""

    doc_id: str
    external_id: str
    source: SourceKind = SourceKind.RAW
    uri: str
    title: str = "Untitled"
    content_type: str = "text/plain"
    size_bytes: int = 0
    content_hash: str
    mtime: str = Field(default_factory=utc_now)
    ingest_status: IngestStatus = IngestStatus.OK
    notes: str | None = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class Segment(BaseModel):
    """A page or section of a document. Chunks never span two segments."""

    segment_id: str
    doc_id: str
    kind: SegmentKind = SegmentKind.SECTION
    page: int | None = None
    meta: dict = {}
    text: str


class Chunk(BaseModel):
    """A slice of a segment's text with its embedding."""

    chunk_id: str
    segment_id: str
    index: int
    start_char: int
    end_char: int
    text: str
    embedding: list[float] = Field(default=[], repr=False)


class TextChunk(BaseModel):
    """Chunker output: offsets are relative to the segment text."""

    text: str
    start: int
    end: int
    index: int


# ---------------------------------------------------------------------------
# Ingestion requests and results
# ---------------------------------------------------------------------------

class SegmentInput(BaseModel):
    """A segment as produced by an extractor, before it has an id."""

    kind: SegmentKind = SegmentKind.SECTION
    page: int | None = None
    meta: dict = {}
    text: str


class ExtractionResult(BaseModel):
    """What the extraction collaborator hands back for one file."""

    segments: list[SegmentInput] = []
    extraction_status: IngestStatus = IngestStatus.OK
    notes: str | None = None
    title: str | None = None
    content_type: str = "application/octet-stream"
    metadata: dict = {}


class IngestRequest(BaseModel):
    """One document to upsert: raw text or pre-built segments plus metadata."""

    text: str | None = None
    segments: list[SegmentInput] | None = None
    external_id: str | None = None
    title: str | None = None
    source: SourceKind = SourceKind.RAW
    uri: str | None = None
    content_type: str = "text/plain"
    size_bytes: int | None = None
    mtime: str | None = None
    ingest_status: IngestStatus = IngestStatus.OK
    notes: str | None = None
    metadata: dict = {}

    @property
    def has_content(self) -> bool:
        return self.text is not None or self.segments is not None

    def hash_input(self) -> str:
        """The text the content hash is computed over."""
        if self.text is not None:
            return self.text
        return "\n".join(s.text for s in self.segments or [])


class IngestResult(BaseModel):
    doc_id: str
    chunk_count: int = 0
    status: str  # inserted | updated | skipped | error
    external_id: str | None = None
    error: str | None = None


class FileIngestResult(IngestResult):
    """Result of ingesting one file from disk."""

    file_path: str
    ingest_status: IngestStatus | None = None


class DeleteResult(BaseModel):
    deleted_doc_ids: list[str] = []
    deleted_chunk_count: int = 0


class DocumentPage(BaseModel):
    documents: list[Document]
    next_cursor: str | None = None


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchHit(BaseModel):
    """Result shape shared by every vector search strategy."""

    chunk_id: str
    segment_id: str
    doc_id: str
    score: float
    preview: str
    text: str
    title: str | None = None
    source_badge: str | None = None


class Match(BaseModel):
    """A search result as returned to callers."""

    chunk_id: str
    doc_id: str
    score: float
    preview: str
    resource: str
    title: str | None = None
    source_badge: str | None = None


class ChunkResource(BaseModel):
    """Full chunk text plus its segment and parent document."""

    resource: str
    chunk_id: str
    segment_id: str
    text: str
    start_char: int
    end_char: int
    segment_kind: SegmentKind
    page: int | None = None
    segment_meta: dict = {}
    document: Document


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class WatcherStats(BaseModel):
    files_watched: int = 0
    events_processed: int = 0
    last_activity: str | None = None
    pending_operations: int = 0
    errors: int = 0
