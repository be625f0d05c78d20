"""Ingestion Module - PDF validation, page extraction with OCR fallback, chunking, persistence."""

from .errors import IngestionError
from .models import Chunk, DocumentMetadata, IngestSummary, OCRResult, Page
from .pipeline import IngestionPipeline

__all__ = [
    "Chunk",
    "DocumentMetadata",
    "IngestSummary",
    "IngestionError",
    "IngestionPipeline",
    "OCRResult",
    "Page",
]
