"""
Pydantic models for the document grounding core.
All data contracts defined here - single source of truth for schemas.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ChunkType = Literal["paragraph", "table", "header", "footer", "list"]
ReadinessState = Literal["processing", "ready", "missing", "error"]
IngestMode = Literal["ephemeral", "durable", "both"]


def _utc_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


# =============================================================================
# Document Models
# =============================================================================

class DocumentMetadata(BaseModel):
    """Caller-supplied metadata accompanying the uploaded bytes."""

    filename: str
    declared_size: Optional[int] = None
    content_type: str = "application/pdf"
    owner_id: str = "anonymous"


class Document(BaseModel):
    """An uploaded document. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    doc_id: str
    filename: str
    size: int
    page_count: int
    content_hash: str
    owner_id: str
    ingest_ts: str = Field(default_factory=_utc_now)

    def to_jsonl(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_jsonl(cls, line: str) -> "Document":
        return cls.model_validate_json(line)


class TextItem(BaseModel):
    """A positioned word from the structural text layer."""

    text: str
    x0: float
    x1: float
    top: float
    bottom: float


class Page(BaseModel):
    """Extracted content of one page."""

    page_number: int = Field(ge=1)
    text: str = ""
    structural_text: str = ""
    items: list[TextItem] = Field(default_factory=list)
    ocr_used: bool = False
    confidence: float = Field(default=1.0, ge=0, le=1)
    error: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())


# =============================================================================
# Chunk Models (Core Data Unit)
# =============================================================================

class Chunk(BaseModel):
    """
    Retrievable unit of page text.
    Types: paragraph, table, header, footer, list
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    doc_id: str
    page: int = Field(ge=1)
    index: int = Field(default=0, ge=0)
    start_line: int = 0
    end_line: int = 0
    tokens: int = 0
    type: ChunkType = "paragraph"
    content: str

    @field_validator("end_line")
    @classmethod
    def end_after_start(cls, v: int, info) -> int:
        start = info.data.get("start_line", 0)
        if v < start:
            raise ValueError(f"end_line {v} precedes start_line {start}")
        return v

    def to_jsonl(self) -> str:
        """Serialize to JSONL format."""
        return self.model_dump_json()

    @classmethod
    def from_jsonl(cls, line: str) -> "Chunk":
        """Deserialize from JSONL line."""
        return cls.model_validate_json(line)


class TableCandidate(BaseModel):
    """Numeric table detected from word positions."""

    doc_id: Optional[str] = None
    page: int
    bbox: tuple[float, float, float, float]  # x0, top, x1, bottom
    header: Optional[list[str]] = None
    rows: list[list[str]] = Field(default_factory=list)

    @property
    def column_count(self) -> int:
        all_rows = ([self.header] if self.header else []) + self.rows
        return max((len(r) for r in all_rows), default=0)

    def to_jsonl(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_jsonl(cls, line: str) -> "TableCandidate":
        return cls.model_validate_json(line)


class ParseResult(BaseModel):
    """Outcome of processing a whole document. Frozen once assembled."""

    model_config = ConfigDict(frozen=True)

    success: bool
    pages: list[Page] = Field(default_factory=list)
    chunks: list[Chunk] = Field(default_factory=list)
    tables: list[TableCandidate] = Field(default_factory=list)
    processing_time_ms: int = 0
    partial_failure: bool = False
    error: Optional[str] = None


# =============================================================================
# OCR Result
# =============================================================================

class OCRResult(BaseModel):
    """Result from an OCR engine."""

    text: str
    confidence: float = Field(default=0.0, ge=0, le=100)  # Mean confidence 0-100
    items: list[TextItem] = Field(default_factory=list)  # Word boxes in source image pixels


class ExtractionOptions(BaseModel):
    """Per-page extraction thresholds."""

    ocr_trigger_chars: int = 400
    digit_ratio_threshold: float = 0.35
    ocr_dpi: int = 300
    ocr_timeout_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: dict) -> "ExtractionOptions":
        return cls(
            ocr_trigger_chars=config.get("ocr_trigger_chars", 400),
            digit_ratio_threshold=config.get("digit_ratio_threshold", 0.35),
            ocr_dpi=config.get("ocr_dpi", 300),
            ocr_timeout_seconds=config.get("ocr_timeout_seconds", 30.0),
        )


# =============================================================================
# Context & Readiness Models
# =============================================================================

class StoredContext(BaseModel):
    """Cached chunks for one request key. Replaced wholesale, never mutated."""

    key: str
    chunks: list[Chunk]
    created_at: float
    ttl_seconds: float
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ReadinessStatus(BaseModel):
    """Progress of one ingestion as seen by pollers."""

    key: str
    status: ReadinessState = "missing"
    parts_indexed: int = Field(default=0, ge=0)
    pages_indexed: int = Field(default=0, ge=0)
    content_hash: Optional[str] = None
    owner_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    updated_at: str = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("ready", "error")

    def to_jsonl(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_jsonl(cls, line: str) -> "ReadinessStatus":
        return cls.model_validate_json(line)


class ReadinessSummary(BaseModel):
    """Polling view derived from a status and its counters."""

    status: ReadinessState
    parts: int
    required_parts: int
    percent_ready: int = Field(ge=0, le=100)
    is_ready: bool
    estimated_time_seconds: Optional[int] = None
    retry_after_seconds: Optional[int] = None


class IngestSummary(BaseModel):
    """Result returned to the caller of an ingestion."""

    success: bool
    request_key: Optional[str] = None
    doc_id: Optional[str] = None
    page_count: int = 0
    chunk_count: int = 0
    table_count: int = 0
    processing_time_ms: int = 0
    partial_failure: bool = False
    cached: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


# =============================================================================
# Scored Result (for retrieval)
# =============================================================================

class ScoredChunk(BaseModel):
    """Chunk with lexical score from retrieval."""

    chunk: Chunk
    score: float
    priority: bool = False
