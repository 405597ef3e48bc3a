"""Document extractors — one function per file type.

Each extractor reads a file and returns an ExtractionResult with page or
section segments. Extractors raise ExtractionError subclasses; extract_file()
turns those into a result carrying the mapped ingest status.

PDF is not supported: there is no extractor for it, so .pdf files are
filtered out before extraction like any other unknown extension.
"""

from __future__ import annotations

import logging
import re
import zipfile
from collections.abc import Callable
from pathlib import Path

from localdex.errors import (
    EncryptedOrProtectedError,
    ExtractionError,
    InsufficientTextError,
)
from localdex.models import (
    ExtractionResult,
    IngestStatus,
    SegmentInput,
    SegmentKind,
    next_status,
)

log = logging.getLogger(__name__)

# Password-protected OOXML files are stored as OLE compound documents
_OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_W_NS = {"w": "http://schemas.openxmlformats.org/wordprocessingml/2006/main"}
_HEADING_STYLE = re.compile(r"^(?:heading\s*)(\d)$", re.IGNORECASE)

CONTENT_TYPES = {
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}


def get_content_type(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


def title_from_filename(path: Path) -> str:
    """'quarterly_report-v2.md' -> 'Quarterly Report V2'."""
    name = re.sub(r"[_-]", " ", path.stem)
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), name)


def extract_title(path: Path, content: str) -> str:
    """Markdown H1 or a title-like line among the first 10, else the filename."""
    for line in content.split("\n")[:10]:
        line = line.strip()
        m = re.match(r"^#\s+(.+)$", line)
        if m:
            return m.group(1).strip()
        if (
            3 < len(line) < 100
            and "." not in line
            and "," not in line
            and line[0].isupper()
        ):
            return line
    return title_from_filename(path)


def _text_stats(text: str) -> dict:
    return {"character_count": len(text), "word_count": len(text.split())}


def _check_not_encrypted(path: Path) -> None:
    with open(path, "rb") as f:
        if f.read(len(_OLE_MAGIC)) == _OLE_MAGIC:
            raise EncryptedOrProtectedError()


# ---------------------------------------------------------------------------
# Plain text (.txt, .md)
# ---------------------------------------------------------------------------

def extract_text(path: Path, **_: object) -> ExtractionResult:
    """Read a plain text file as one section."""
    raw = path.read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")

    if text.count("\x00") > len(text) * 0.01:
        raise ExtractionError("Binary file detected")

    return ExtractionResult(
        segments=[SegmentInput(kind=SegmentKind.SECTION, text=text)],
        title=extract_title(path, text),
        content_type=get_content_type(path),
        metadata=_text_stats(text),
    )


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

def _docx_blocks(doc) -> list[tuple[str, int | None]]:
    """(text, heading level or None) for each paragraph and table row, in order."""
    from lxml import etree

    blocks: list[tuple[str, int | None]] = []
    # Walk the body XML to interleave paragraphs and tables in document order
    for child in doc.element.body:
        tag = etree.QName(child).localname
        if tag == "p":
            text = "".join(r.text or "" for r in child.findall(".//w:t", _W_NS))
            if not text.strip():
                continue
            style = child.find("./w:pPr/w:pStyle", _W_NS)
            style_id = style.get(f"{{{_W_NS['w']}}}val", "") if style is not None else ""
            level = None
            if style_id.lower() == "title":
                level = 1
            else:
                m = _HEADING_STYLE.match(style_id)
                if m:
                    level = int(m.group(1))
            blocks.append((text, level))
        elif tag == "tbl":
            for row in child.findall(".//w:tr", _W_NS):
                cells = [
                    "".join(r.text or "" for r in cell.findall(".//w:t", _W_NS))
                    for cell in row.findall(".//w:tc", _W_NS)
                ]
                blocks.append((" | ".join(cells), None))
    return blocks


def _heading_segments(blocks: list[tuple[str, int | None]]) -> list[SegmentInput]:
    """Split at level 1-2 headings; each heading labels the text that follows."""
    segments: list[SegmentInput] = []
    heading: tuple[str, int] | None = None
    body: list[str] = []

    def flush() -> None:
        text = "\n\n".join(body).strip()
        if text:
            meta = {"heading": heading[0], "level": heading[1]} if heading else {}
            segments.append(SegmentInput(kind=SegmentKind.SECTION, meta=meta, text=text))

    for text, level in blocks:
        if level is not None and level <= 2:
            flush()
            heading, body = (text.strip(), level), []
        else:
            body.append(text)
    flush()
    return segments


def extract_docx(path: Path, *, split_on_headings: bool = False, **_: object) -> ExtractionResult:
    """Extract text from .docx preserving paragraph and table order."""
    from docx import Document as DocxDocument
    from docx.opc.exceptions import PackageNotFoundError
    from lxml import etree

    _check_not_encrypted(path)
    try:
        doc = DocxDocument(str(path))
        blocks = _docx_blocks(doc)
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, etree.XMLSyntaxError) as e:
        raise ExtractionError(f"Invalid DOCX file: {e}") from e

    full_text = "\n\n".join(text for text, _ in blocks).strip()
    if not full_text:
        raise InsufficientTextError("DOCX file contains no extractable text")

    segments = _heading_segments(blocks) if split_on_headings else []
    if not segments:
        segments = [SegmentInput(kind=SegmentKind.SECTION, text=full_text)]

    return ExtractionResult(
        segments=segments,
        title=doc.core_properties.title or title_from_filename(path),
        content_type=get_content_type(path),
        metadata={"author": doc.core_properties.author or "", **_text_stats(full_text)},
    )


# ---------------------------------------------------------------------------
# PPTX
# ---------------------------------------------------------------------------

def extract_pptx(path: Path, **_: object) -> ExtractionResult:
    """Extract text from .pptx — one page segment per slide with speaker notes."""
    from pptx import Presentation
    from pptx.exc import PackageNotFoundError

    _check_not_encrypted(path)
    try:
        prs = Presentation(str(path))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as e:
        raise ExtractionError(f"Invalid PPTX file: {e}") from e

    segments: list[SegmentInput] = []
    for slide_num, slide in enumerate(prs.slides, 1):
        parts: list[str] = []
        for shape in slide.shapes:
            if shape.has_text_frame:
                text = shape.text_frame.text.strip()
                if text:
                    parts.append(text)
            if getattr(shape, "has_table", False) and shape.has_table:
                for row in shape.table.rows:
                    parts.append(" | ".join(cell.text.strip() for cell in row.cells))

        if slide.has_notes_slide and slide.notes_slide.notes_text_frame:
            notes = slide.notes_slide.notes_text_frame.text.strip()
            if notes:
                parts.append(f"[Speaker Notes] {notes}")

        text = "\n".join(parts).strip()
        if text:
            segments.append(SegmentInput(kind=SegmentKind.PAGE, page=slide_num, text=text))

    if not segments:
        raise InsufficientTextError("PPTX file contains no extractable text")

    title = title_from_filename(path)
    if prs.core_properties and prs.core_properties.title:
        title = prs.core_properties.title

    full_text = "\n".join(s.text for s in segments)
    return ExtractionResult(
        segments=segments,
        title=title,
        content_type=get_content_type(path),
        metadata={"slide_count": len(prs.slides), **_text_stats(full_text)},
    )


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

Extractor = Callable[..., ExtractionResult]

EXTRACTORS: dict[str, Extractor] = {
    ".txt": extract_text,
    ".md": extract_text,
    ".docx": extract_docx,
    ".pptx": extract_pptx,
}


def get_extractor(path: Path) -> Extractor | None:
    """Look up the extractor for a file path, or None if unsupported."""
    return EXTRACTORS.get(path.suffix.lower())


def truncate_notes(message: str, limit: int = 500) -> str:
    return message if len(message) <= limit else message[: limit - 3] + "..."


def extract_file(
    path: Path,
    *,
    split_on_headings: bool = False,
    min_text_chars: int = 1,
    notes_max_chars: int = 500,
) -> ExtractionResult:
    """Extract *path*, reporting failures as a status instead of raising.

    An unsupported extension is still an ExtractionError: callers filter those
    out before extracting.
    """
    extractor = get_extractor(path)
    if extractor is None:
        raise ExtractionError(f"No extractor for {path.suffix or path.name}")

    try:
        result = extractor(path, split_on_headings=split_on_headings)
        if not result.content_type.startswith("text/"):
            chars = sum(len(s.text.strip()) for s in result.segments)
            if chars < min_text_chars:
                raise InsufficientTextError(
                    f"Only {chars} characters extracted, below minimum of {min_text_chars}"
                )
    except ExtractionError as e:
        status = next_status(None, e.outcome)
        log.warning("Extraction of %s failed (%s): %s", path, status.value, e)
        return ExtractionResult(
            extraction_status=status,
            notes=truncate_notes(str(e), notes_max_chars),
            title=title_from_filename(path),
            content_type=get_content_type(path),
        )
    except OSError as e:
        log.warning("Could not read %s: %s", path, e)
        return ExtractionResult(
            extraction_status=IngestStatus.ERROR,
            notes=truncate_notes(f"Could not read file: {e}", notes_max_chars),
            title=title_from_filename(path),
            content_type=get_content_type(path),
        )
    return result
