"""Exception hierarchy.

Extraction errors carry the ingest status they map to, so the file layer can
record a failed document without a lookup table of its own.
"""

from __future__ import annotations

from localdex.models import IngestOutcome


class LocaldexError(Exception):
    """Base class for all errors raised by localdex."""


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionError(LocaldexError):
    """The extractor could not parse the file."""

    outcome = IngestOutcome.FAILED


class EncryptedOrProtectedError(ExtractionError):
    """The file is encrypted or password protected."""

    outcome = IngestOutcome.ENCRYPTED

    def __init__(self, message: str = "encrypted"):
        super().__init__(message)


class TooLargeError(ExtractionError):
    """The file exceeds the configured size or page limit."""

    outcome = IngestOutcome.TOO_LARGE


class InsufficientTextError(ExtractionError):
    """The file has too little extractable text (likely needs OCR)."""

    outcome = IngestOutcome.INSUFFICIENT_TEXT


# ---------------------------------------------------------------------------
# Caller input
# ---------------------------------------------------------------------------

class ValidationError(LocaldexError):
    """Malformed caller input. Always raised, never silently degraded."""


class ResourceNotFoundError(LocaldexError):
    """A doc:// resource does not resolve to a stored chunk."""

    def __init__(self, doc_id: str, chunk_id: str):
        super().__init__(f"Resource not found: doc://{doc_id}#{chunk_id}")
        self.doc_id = doc_id
        self.chunk_id = chunk_id


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class StoreError(LocaldexError):
    """The store could not be opened or configured."""


class StoreTransactionError(StoreError):
    """A write transaction failed and was rolled back."""
