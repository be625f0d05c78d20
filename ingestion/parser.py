"""
PDF container reader.
Validates uploads with PyPDF2 and reads positioned words per page with pdfplumber.
"""

from __future__ import annotations

import io
import logging
import statistics
from dataclasses import dataclass, field
from typing import List, Optional

import pdfplumber
from PyPDF2 import PdfReader

from .errors import InvalidDocumentError, ValidationError
from .models import DocumentMetadata, TextItem

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
SUPPORTED_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}
GENERIC_CONTENT_TYPES = {"application/octet-stream", "binary/octet-stream", ""}
SUPPORTED_EXTENSIONS = {".pdf"}

DEFAULT_MAX_UPLOAD_MB = 25
DEFAULT_MAX_PAGES = 500

# Words whose tops differ by at most this many points share a line.
LINE_TOLERANCE = 3.0
# Vertical gap (in median line heights) that starts a new paragraph.
PARAGRAPH_GAP_LINES = 1.5
# Horizontal gap (in average character widths) rendered as a column break.
COLUMN_GAP_CHARS = 3.0
COLUMN_SEPARATOR = "    "


@dataclass
class PageSource:
    """One renderable page: its structural words plus a handle to the document."""

    page_number: int
    items: List[TextItem] = field(default_factory=list)
    pdf_bytes: bytes = field(default=b"", repr=False)
    width: float = 0.0
    height: float = 0.0


def group_lines(items: List[TextItem], tolerance: float = LINE_TOLERANCE) -> List[List[TextItem]]:
    """Group positioned words into lines ordered top-to-bottom, left-to-right."""
    lines: List[List[TextItem]] = []
    for item in sorted(items, key=lambda i: (i.top, i.x0)):
        if lines and abs(item.top - lines[-1][0].top) <= tolerance:
            lines[-1].append(item)
        else:
            lines.append([item])
    return [sorted(line, key=lambda i: i.x0) for line in lines]


def _char_width(line: List[TextItem]) -> float:
    chars = sum(len(i.text) for i in line)
    width = sum(i.x1 - i.x0 for i in line)
    return width / chars if chars else 0.0


def join_line(line: List[TextItem]) -> str:
    """Join the words of one line, marking wide gaps with COLUMN_SEPARATOR."""
    if not line:
        return ""
    char_width = _char_width(line) or 5.0
    parts = [line[0].text]
    for prev, item in zip(line, line[1:]):
        gap = item.x0 - prev.x1
        parts.append(COLUMN_SEPARATOR if gap > COLUMN_GAP_CHARS * char_width else " ")
        parts.append(item.text)
    return "".join(parts)


def build_structural_text(items: List[TextItem], tolerance: float = LINE_TOLERANCE) -> str:
    """
    Render positioned words as plain text.

    Words on a line are joined by a space, or by a wide separator where the
    gap looks like a column break. Lines are joined by newlines, with a
    blank line wherever the vertical gap exceeds a paragraph gap.
    """
    lines = group_lines(items, tolerance)
    if not lines:
        return ""

    heights = [max(i.bottom for i in line) - min(i.top for i in line) for line in lines]
    line_height = statistics.median(h for h in heights if h > 0) if any(h > 0 for h in heights) else 10.0

    out: List[str] = []
    prev_bottom: Optional[float] = None
    for line in lines:
        top = min(i.top for i in line)
        if prev_bottom is not None and top - prev_bottom > PARAGRAPH_GAP_LINES * line_height:
            out.append("")

        out.append(join_line(line))
        prev_bottom = max(i.bottom for i in line)

    return "\n".join(out)


class PDFParser:
    """
    Validate uploads and read per-page words.
    PyPDF2 checks the container; pdfplumber supplies word positions.
    """

    def __init__(
        self,
        max_upload_mb: float = DEFAULT_MAX_UPLOAD_MB,
        max_pages: int = DEFAULT_MAX_PAGES,
    ):
        self.max_bytes = int(max_upload_mb * 1024 * 1024)
        self.max_pages = max_pages

    def validate(self, data: bytes, metadata: DocumentMetadata) -> int:
        """
        Reject unusable uploads before any processing.

        Args:
            data: Raw upload bytes
            metadata: Caller-supplied filename, size and type

        Returns:
            Page count of the container

        Raises:
            ValidationError: size, type or page count out of bounds
            InvalidDocumentError: bytes are not a readable PDF
        """
        declared = metadata.declared_size if metadata.declared_size is not None else len(data)
        if declared > self.max_bytes or len(data) > self.max_bytes:
            raise ValidationError(
                f"File exceeds {self.max_bytes // (1024 * 1024)}MB limit "
                f"({max(declared, len(data))} bytes)",
                code="FILE_TOO_LARGE",
            )

        if not self._is_supported_type(metadata):
            raise ValidationError(
                f"Unsupported file type {metadata.content_type!r} for {metadata.filename}",
                code="INVALID_FILE_TYPE",
            )

        if not data:
            raise ValidationError("Empty upload", code="NO_PAGES")

        if data.lstrip()[:4] != PDF_MAGIC:
            raise InvalidDocumentError(f"{metadata.filename} is not a PDF (missing %PDF header)")

        page_count = self.get_page_count(data)
        if page_count < 1:
            raise ValidationError(f"{metadata.filename} has no pages", code="NO_PAGES")
        if page_count > self.max_pages:
            raise ValidationError(
                f"{metadata.filename} has {page_count} pages (limit {self.max_pages})",
                code="TOO_MANY_PAGES",
            )
        return page_count

    def _is_supported_type(self, metadata: DocumentMetadata) -> bool:
        content_type = (metadata.content_type or "").split(";")[0].strip().lower()
        if content_type in SUPPORTED_CONTENT_TYPES:
            return True
        if content_type in GENERIC_CONTENT_TYPES:
            name = metadata.filename.lower()
            return any(name.endswith(ext) for ext in SUPPORTED_EXTENSIONS)
        return False

    def get_page_count(self, data: bytes) -> int:
        """Open the container with PyPDF2 and count pages."""
        try:
            reader = PdfReader(io.BytesIO(data))
            if reader.is_encrypted:
                # Owner-password-only files open with an empty user password.
                reader.decrypt("")
            return len(reader.pages)
        except Exception as e:
            raise InvalidDocumentError(f"Unreadable PDF container: {e}") from e

    def read_pages(self, data: bytes) -> List[PageSource]:
        """
        Read positioned words for every page.

        A page whose text layer cannot be read yields an empty word list,
        leaving recovery to the OCR fallback.
        """
        sources: List[PageSource] = []
        try:
            pdf = pdfplumber.open(io.BytesIO(data))
        except Exception as e:
            raise InvalidDocumentError(f"Unreadable PDF container: {e}") from e

        with pdf:
            for page_num, page in enumerate(pdf.pages, start=1):
                try:
                    words = page.extract_words(keep_blank_chars=False, use_text_flow=False)
                except Exception as e:
                    logger.warning(f"Text layer unreadable on page {page_num}: {e}")
                    words = []

                items = [
                    TextItem(
                        text=w["text"],
                        x0=float(w["x0"]),
                        x1=float(w["x1"]),
                        top=float(w["top"]),
                        bottom=float(w["bottom"]),
                    )
                    for w in words
                    if w.get("text", "").strip()
                ]
                sources.append(PageSource(
                    page_number=page_num,
                    items=items,
                    pdf_bytes=data,
                    width=float(page.width),
                    height=float(page.height),
                ))

        logger.debug(f"Read {len(sources)} pages")
        return sources
