from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import fitz  # PyMuPDF

from summarium.core.errors import ExtractionError

logger = logging.getLogger(__name__)

PAGE_MARKER_TEMPLATE = "[PAGE {page}]"
PAGE_MARKER_RE = re.compile(r"\[PAGE\s+(\d+)\]\n", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_PAGE_SEPARATOR = "\n\n"


@dataclass(slots=True)
class PageSpan:
    """Character range of one page's text inside the joined document text (marker excluded)."""

    page_number: int
    start_offset: int
    end_offset: int


@dataclass(slots=True)
class ExtractedDocument:
    text: str
    pages: list[PageSpan] = field(default_factory=list)
    source_page_count: int = 0
    pages_read: int = 0
    non_empty_pages: int = 0
    truncated: bool = False

    @property
    def char_count(self) -> int:
        return len(self.text)


def normalize_page_text(raw: str) -> str:
    return _WHITESPACE_RE.sub(" ", raw or "").strip()


def build_paged_text(pages: list[str]) -> tuple[str, list[PageSpan]]:
    """Join page texts with a ``[PAGE n]`` marker line before each page."""
    parts: list[str] = []
    spans: list[PageSpan] = []
    offset = 0
    for index, page_text in enumerate(pages, start=1):
        if parts:
            parts.append(_PAGE_SEPARATOR)
            offset += len(_PAGE_SEPARATOR)
        marker = PAGE_MARKER_TEMPLATE.format(page=index) + "\n"
        parts.append(marker)
        offset += len(marker)
        parts.append(page_text)
        spans.append(PageSpan(page_number=index, start_offset=offset, end_offset=offset + len(page_text)))
        offset += len(page_text)
    return "".join(parts), spans


def split_paged_text(text: str) -> list[tuple[int, str]]:
    """Recover ``(page_number, page_text)`` pairs from marked text."""
    normalized = (text or "").replace("\r\n", "\n")
    matches = list(PAGE_MARKER_RE.finditer(normalized))
    pages: list[tuple[int, str]] = []
    for idx, match in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(normalized)
        pages.append((int(match.group(1)), normalized[match.end():end].strip()))
    return pages


class PdfTextExtractor:
    """Page-segmented plain text from a PDF buffer using PyMuPDF."""

    def __init__(self, *, max_pages: int = 500, max_chars: int | None = 1_200_000) -> None:
        if max_pages < 1:
            raise ValueError("max_pages must be positive")
        self.max_pages = max_pages
        self.max_chars = max_chars

    def extract(self, data: bytes) -> ExtractedDocument:
        if not data:
            raise ExtractionError("Source document is empty.")
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise ExtractionError(f"Unable to open source document as PDF: {exc}") from exc

        try:
            source_page_count = doc.page_count
            pages_to_read = min(source_page_count, self.max_pages)
            if source_page_count > pages_to_read:
                logger.debug("Reading first %s of %s pages", pages_to_read, source_page_count)
            page_texts = [normalize_page_text(doc.load_page(i).get_text("text")) for i in range(pages_to_read)]
        except Exception as exc:
            raise ExtractionError(f"Failed to read text from PDF: {exc}") from exc
        finally:
            doc.close()

        non_empty = sum(1 for t in page_texts if t)
        if non_empty == 0:
            raise ExtractionError("No text extracted from PDF.")

        text, spans = build_paged_text(page_texts)
        truncated = False
        if self.max_chars is not None and len(text) > self.max_chars:
            logger.warning(
                "Extracted text truncated from %s to %s characters (%s pages read)",
                len(text),
                self.max_chars,
                pages_to_read,
            )
            text = text[: self.max_chars]
            spans = _clip_spans(spans, self.max_chars)
            truncated = True

        return ExtractedDocument(
            text=text,
            pages=spans,
            source_page_count=source_page_count,
            pages_read=pages_to_read,
            non_empty_pages=non_empty,
            truncated=truncated,
        )


def _clip_spans(spans: list[PageSpan], limit: int) -> list[PageSpan]:
    clipped: list[PageSpan] = []
    for span in spans:
        if span.start_offset >= limit:
            break
        clipped.append(
            PageSpan(
                page_number=span.page_number,
                start_offset=span.start_offset,
                end_offset=min(span.end_offset, limit),
            )
        )
    return clipped
