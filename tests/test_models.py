"""Tests for localdex.models (status transitions and request helpers)."""

from __future__ import annotations

import pytest

from localdex.errors import (
    EncryptedOrProtectedError,
    ExtractionError,
    InsufficientTextError,
    TooLargeError,
)
from localdex.models import (
    IngestOutcome,
    IngestRequest,
    IngestStatus,
    SegmentInput,
    can_skip,
    next_status,
)


def test_new_document_transitions():
    assert next_status(None, IngestOutcome.EXTRACTED) is IngestStatus.OK
    assert next_status(None, IngestOutcome.ENCRYPTED) is IngestStatus.SKIPPED
    assert next_status(None, IngestOutcome.TOO_LARGE) is IngestStatus.TOO_LARGE
    assert next_status(None, IngestOutcome.INSUFFICIENT_TEXT) is IngestStatus.NEEDS_OCR
    assert next_status(None, IngestOutcome.FAILED) is IngestStatus.ERROR


def test_error_document_can_recover():
    assert next_status(IngestStatus.ERROR, IngestOutcome.EXTRACTED) is IngestStatus.OK


def test_unchanged_only_from_ok():
    assert next_status(IngestStatus.OK, IngestOutcome.UNCHANGED) is IngestStatus.OK
    with pytest.raises(ValueError, match="needs_ocr"):
        next_status(IngestStatus.NEEDS_OCR, IngestOutcome.UNCHANGED)
    with pytest.raises(ValueError, match="new"):
        next_status(None, IngestOutcome.UNCHANGED)


def test_can_skip():
    assert can_skip(IngestStatus.OK)
    assert not can_skip(IngestStatus.ERROR)
    assert not can_skip(IngestStatus.TOO_LARGE)
    assert not can_skip(None)


def test_extraction_errors_carry_outcome():
    assert ExtractionError("x").outcome is IngestOutcome.FAILED
    assert EncryptedOrProtectedError().outcome is IngestOutcome.ENCRYPTED
    assert str(EncryptedOrProtectedError()) == "encrypted"
    assert TooLargeError("x").outcome is IngestOutcome.TOO_LARGE
    assert InsufficientTextError("x").outcome is IngestOutcome.INSUFFICIENT_TEXT


def test_request_hash_input():
    assert IngestRequest(text="abc").hash_input() == "abc"
    req = IngestRequest(segments=[SegmentInput(text="one"), SegmentInput(text="two")])
    assert req.hash_input() == "one\ntwo"


def test_request_has_content():
    assert IngestRequest(text="").has_content
    assert IngestRequest(segments=[]).has_content
    assert not IngestRequest(title="nothing").has_content
