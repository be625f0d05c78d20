"""
Exception hierarchy for document ingestion.

Every error carries a stable ``code`` so callers can report a reason
without parsing messages. Missing contexts are never errors: stores
return None and status lookups return "missing".
"""

from __future__ import annotations

from typing import Optional


class IngestionError(Exception):
    """Base exception for all ingestion errors."""

    code = "INGESTION_FAILED"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(IngestionError):
    """Upload rejected before any processing (size, type, page count)."""

    code = "VALIDATION_FAILED"


class InvalidDocumentError(IngestionError):
    """The container could not be opened or read."""

    code = "INVALID_PDF"


class NoUsableTextError(IngestionError):
    """No page produced usable text."""

    code = "NO_USABLE_TEXT"


class ExtractionError(IngestionError):
    """A single page failed to extract. Recovered per page."""

    code = "EXTRACTION_FAILED"

    def __init__(self, message: str, page_number: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code)
        self.page_number = page_number


class ExtractionTimeoutError(ExtractionError):
    """Page extraction or OCR exceeded its time limit."""

    code = "EXTRACTION_TIMEOUT"


class PersistenceError(IngestionError):
    """Durable write failed after bounded retries."""

    code = "PERSISTENCE_FAILED"


class IngestionCancelled(IngestionError):
    """The caller cancelled the run."""

    code = "CANCELLED"
