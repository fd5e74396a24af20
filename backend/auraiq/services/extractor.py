"""
Format-specific content extraction.

Each extractor turns a SourceFile into ExtractedContent (text plus stored image
URLs). Extractors are registered against media-type patterns; the ingestion
layer looks them up with ``resolve_extractor`` and never branches on media
types itself.

Degradation rules:
- PDF and DOCX text failures degrade to empty text plus a warning.
- Embedded image failures are logged per image and never affect the text.
- A presentation whose archive cannot be opened, an unreadable workbook, and an
  oversized text file raise ExtractionError; ingestion turns that into an
  inline note for that one file.
"""

import asyncio
import html
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import pdfplumber
from docx import Document

from auraiq import config
from auraiq.errors import ExtractionError
from auraiq.models.chat import ExtractedContent, SourceFile
from auraiq.services.spreadsheet_parser import render_workbook

logger = logging.getLogger(__name__)

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DOCX_MEDIA_PATTERN = re.compile(r"^word/media/.+\.(jpg|jpeg|png|gif|bmp|svg)$", re.IGNORECASE)
PPTX_MEDIA_PATTERN = re.compile(r"^ppt/media/.+\.(jpg|jpeg|png|gif|bmp|svg|webp)$", re.IGNORECASE)
PPTX_SLIDE_PATTERN = re.compile(r"^ppt/slides/slide(\d+)\.xml$", re.IGNORECASE)
PPTX_TEXT_RUN_PATTERN = re.compile(r"<a:t>([^<]*)</a:t>")

Extractor = Callable[[SourceFile, Any], Awaitable[ExtractedContent]]


@dataclass(frozen=True)
class ExtractorEntry:
    pattern: str          # exact media type, or a prefix ending in "*"
    kind: str             # short label used in failure notes ("PDF", "DOCX", ...)
    extract: Extractor


class ExtractorRegistry:
    """
    Maps media-type patterns to extractors.

    Exact patterns win over wildcard ones. A wildcard ends in "*" and matches
    any media type starting with the text before it ("text/*",
    "application/json*"); wildcards are tried in registration order.
    """

    def __init__(self):
        self._exact: dict[str, ExtractorEntry] = {}
        self._wildcards: list[ExtractorEntry] = []

    def register(self, *patterns: str, kind: str):
        def decorator(func: Extractor) -> Extractor:
            for pattern in patterns:
                entry = ExtractorEntry(pattern=pattern, kind=kind, extract=func)
                if pattern.endswith("*"):
                    self._wildcards.append(entry)
                else:
                    self._exact[pattern] = entry
            return func
        return decorator

    def resolve(self, media_type: str) -> Optional[ExtractorEntry]:
        media_type = normalize_media_type(media_type)
        entry = self._exact.get(media_type)
        if entry is not None:
            return entry
        for wildcard in self._wildcards:
            if media_type.startswith(wildcard.pattern[:-1]):
                return wildcard
        return None


def normalize_media_type(media_type: Optional[str]) -> str:
    """'Text/Plain; charset=utf-8' -> 'text/plain'"""
    if not media_type:
        return ""
    return media_type.split(";", 1)[0].strip().lower()


registry = ExtractorRegistry()


def resolve_extractor(media_type: str) -> Optional[ExtractorEntry]:
    return registry.resolve(media_type)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _image_media_type(entry_name: str) -> str:
    extension = entry_name.rsplit(".", 1)[-1].lower()
    if extension in ("jpg", "jpeg"):
        return "image/jpeg"
    if extension == "svg":
        return "image/svg+xml"
    return f"image/{extension}"


def _read_media_entries(archive: zipfile.ZipFile, pattern: re.Pattern) -> list[tuple[str, bytes]]:
    entries = []
    for name in archive.namelist():
        if not pattern.match(name):
            continue
        try:
            entries.append((name, archive.read(name)))
        except Exception as e:
            logger.warning(f"Could not read embedded media {name}: {e}")
    return entries


async def _store_media_entries(entries: list[tuple[str, bytes]], store) -> list[str]:
    """Upload embedded images one by one; a failed upload skips only that image."""
    urls = []
    for entry_name, data in entries:
        extension = entry_name.rsplit(".", 1)[-1].lower()
        try:
            url = await store.put(f"embedded.{extension}", data, _image_media_type(entry_name))
        except Exception as e:
            logger.warning(f"Failed to store embedded image {entry_name}: {e}")
            continue
        urls.append(url)
    return urls


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

@registry.register("image/*", kind="image")
async def extract_image(source: SourceFile, store) -> ExtractedContent:
    """Images are not text-extracted; they are referenced by their stored URL."""
    if source.url:
        return ExtractedContent(image_urls=[source.url])

    url = await store.put(source.name, source.content, normalize_media_type(source.media_type))
    return ExtractedContent(image_urls=[url])


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

def extract_text_from_pdf(file_content: bytes) -> str:
    """
    Extract the text layer of a PDF with pdfplumber.
    Does NOT support scanned PDFs (no OCR).
    """
    text_parts = []

    with pdfplumber.open(io.BytesIO(file_content)) as pdf:
        for page in pdf.pages:
            page_text = page.extract_text()
            if page_text:
                text_parts.append(page_text)

    return "\n".join(text_parts)


@registry.register("application/pdf", kind="PDF")
async def extract_pdf(source: SourceFile, store) -> ExtractedContent:
    try:
        text = await asyncio.to_thread(extract_text_from_pdf, source.content)
    except Exception as e:
        logger.warning(f"Failed to extract PDF content from {source.name}: {e}")
        text = ""
    return ExtractedContent(text=text)


# ---------------------------------------------------------------------------
# Word-processing documents
# ---------------------------------------------------------------------------

def extract_text_from_docx(file_content: bytes) -> str:
    """Paragraph text followed by table cell text, one line per paragraph/row."""
    doc = Document(io.BytesIO(file_content))

    lines = [para.text for para in doc.paragraphs]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                lines.append(" | ".join(cells))

    return "\n".join(lines).strip()


def _read_docx_media(file_content: bytes) -> list[tuple[str, bytes]]:
    with zipfile.ZipFile(io.BytesIO(file_content)) as archive:
        return _read_media_entries(archive, DOCX_MEDIA_PATTERN)


@registry.register(DOCX_MEDIA_TYPE, kind="DOCX")
async def extract_docx(source: SourceFile, store) -> ExtractedContent:
    try:
        text = await asyncio.to_thread(extract_text_from_docx, source.content)
    except Exception as e:
        logger.warning(f"Failed to extract DOCX text from {source.name}: {e}")
        text = ""

    try:
        media = await asyncio.to_thread(_read_docx_media, source.content)
    except Exception as e:
        logger.warning(f"Failed to extract DOCX images from {source.name}: {e}")
        media = []

    image_urls = await _store_media_entries(media, store)
    return ExtractedContent(text=text, image_urls=image_urls)


# ---------------------------------------------------------------------------
# Presentations
# ---------------------------------------------------------------------------

def _slide_number(entry_name: str) -> int:
    return int(PPTX_SLIDE_PATTERN.match(entry_name).group(1))


def read_pptx(file_content: bytes) -> tuple[str, list[tuple[str, bytes]]]:
    """
    Return (slide text, embedded media entries) for a presentation.

    Slides are read in numeric order (slide2 before slide10). Text runs within
    a slide are joined by spaces; slides are separated by blank lines.

    Raises:
        ExtractionError: if the archive itself cannot be opened
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(file_content))
    except Exception as e:
        raise ExtractionError(f"Failed to process PowerPoint file: {e}")

    with archive:
        slide_names = sorted(
            (name for name in archive.namelist() if PPTX_SLIDE_PATTERN.match(name)),
            key=_slide_number,
        )

        slide_texts = []
        for name in slide_names:
            try:
                xml = archive.read(name).decode("utf-8")
            except Exception as e:
                logger.warning(f"Error extracting text from slide {name}: {e}")
                continue
            runs = [html.unescape(run) for run in PPTX_TEXT_RUN_PATTERN.findall(xml)]
            if runs:
                slide_texts.append(" ".join(runs))

        media = _read_media_entries(archive, PPTX_MEDIA_PATTERN)

    return "\n\n".join(slide_texts).strip(), media


@registry.register(PPTX_MEDIA_TYPE, kind="PPTX")
async def extract_pptx(source: SourceFile, store) -> ExtractedContent:
    text, media = await asyncio.to_thread(read_pptx, source.content)
    image_urls = await _store_media_entries(media, store)
    return ExtractedContent(text=text, image_urls=image_urls)


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

@registry.register(XLSX_MEDIA_TYPE, kind="Excel")
async def extract_xlsx(source: SourceFile, store) -> ExtractedContent:
    rendered = await asyncio.to_thread(render_workbook, source.content, config.MAX_SPREADSHEET_ROWS)
    return ExtractedContent(text=rendered.text)


# ---------------------------------------------------------------------------
# Plain text and text-like formats
# ---------------------------------------------------------------------------

@registry.register(
    "text/*",
    "application/json*",
    "application/javascript*",
    "application/xml*",
    "application/x-python-script*",
    "application/typescript*",
    "application/octet-stream",
    kind="text",
)
async def extract_text(source: SourceFile, store) -> ExtractedContent:
    if len(source.content) >= config.MAX_TEXT_FILE_SIZE:
        raise ExtractionError(
            f"Text file {source.name} is {len(source.content)} bytes; "
            f"limit is {config.MAX_TEXT_FILE_SIZE}"
        )
    return ExtractedContent(text=source.content.decode("utf-8", errors="replace"))


TEXT_FALLBACK = registry.resolve("text/plain")
