"""
Ingestion pipeline - orchestrates bytes → pages → tables/chunks → stores.
Tracks progress on the status board and reports a structured summary.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from shared import get_ocr_limiter

from .chunker import Chunker
from .errors import (
    IngestionCancelled,
    IngestionError,
    NoUsableTextError,
    PersistenceError,
)
from .extractor import LOW_CONFIDENCE, PageExtractor
from .models import (
    Chunk,
    Document,
    DocumentMetadata,
    ExtractionOptions,
    IngestSummary,
    Page,
    ParseResult,
    TableCandidate,
)
from .ocr import create_ocr_engine, create_renderer
from .parser import PageSource, PDFParser, build_structural_text
from .storage import DurableStore
from .structure import TableDetector

logger = logging.getLogger(__name__)

REQUEST_KEY_PREFIX = "mem-"
INGEST_MODES = ("ephemeral", "durable", "both")


def compute_content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_doc_id(owner_id: str, content_hash: str) -> str:
    """Stable per owner and content, so re-uploads map to the same document."""
    return hashlib.md5(f"{owner_id}:{content_hash}".encode()).hexdigest()[:12]


def request_key_for(doc_id: str) -> str:
    return f"{REQUEST_KEY_PREFIX}{doc_id}"


def doc_id_from_key(key: str) -> str:
    """Inverse of request_key_for; plain doc ids pass through unchanged."""
    if key.startswith(REQUEST_KEY_PREFIX):
        return key[len(REQUEST_KEY_PREFIX):]
    return key


class IngestionPipeline:
    """
    Full ingestion pipeline: validate → extract pages → detect tables → chunk → persist.

    Runs for the same doc_id are serialized; different documents proceed
    independently. The ephemeral store and status board are injected so the
    whole process shares one instance of each.
    """

    def __init__(
        self,
        config: dict,
        context_store=None,
        status_board=None,
        durable_store: Optional[DurableStore] = None,
        extractor: Optional[PageExtractor] = None,
        parser: Optional[PDFParser] = None,
    ):
        self.config = config
        self.context_store = context_store
        self.status_board = status_board
        self.durable_store = durable_store

        self.parser = parser or PDFParser(
            max_upload_mb=config.get("max_upload_mb", 25),
            max_pages=config.get("max_pages", 500),
        )
        self.extractor = extractor or PageExtractor(
            renderer=create_renderer(config),
            ocr_engine=create_ocr_engine(config),
            limiter=get_ocr_limiter(config),
        )
        self.chunker = Chunker.from_config(config)
        self.table_detector = TableDetector()
        self.options = ExtractionOptions.from_config(config)

        self.default_mode = config.get("ingest_mode", "both")
        self.max_workers = max(1, config.get("max_concurrent_pages", 4))
        self.page_timeout = config.get("page_timeout_seconds", 60)

        # doc_id -> (lock, runs holding or waiting)
        self._doc_locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._doc_locks_guard = threading.Lock()
        # doc_id -> (owner_id, ParseResult, Document) of recent successful runs
        self._results: "OrderedDict[str, Tuple[str, ParseResult, Document]]" = OrderedDict()
        self.result_cache_size = max(1, config.get("result_cache_size", 32))

    @contextmanager
    def _doc_lock(self, doc_id: str) -> Iterator[None]:
        """Serialize runs for doc_id. The lock is dropped once no run holds or waits on it."""
        with self._doc_locks_guard:
            lock, users = self._doc_locks.get(doc_id, (None, 0))
            lock = lock or threading.Lock()
            self._doc_locks[doc_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._doc_locks_guard:
                lock, users = self._doc_locks[doc_id]
                if users <= 1:
                    del self._doc_locks[doc_id]
                else:
                    self._doc_locks[doc_id] = (lock, users - 1)

    def ingest(
        self,
        data: bytes,
        metadata: DocumentMetadata,
        mode: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
        stage_callback: Optional[Callable[[str, int, int], None]] = None,
    ) -> IngestSummary:
        """
        Ingest one uploaded document.

        Args:
            data: Raw document bytes
            metadata: Filename, declared size/type and owner
            mode: "ephemeral", "durable" or "both" (config ingest_mode if None)
            cancel_event: Set by the caller to stop remaining page work
            force: Reprocess even if this content was already ingested
            stage_callback: Optional callback(stage, stage_index, stage_total)

        Returns:
            IngestSummary; failures carry error and error_code instead of raising
        """
        mode = mode or self.default_mode
        if mode not in INGEST_MODES:
            raise ValueError(f"Unknown ingest mode: {mode}")

        stage_total = 5

        def _stage(name: str, idx: int) -> None:
            if stage_callback:
                stage_callback(name, idx, stage_total)

        t0 = time.time()
        _stage("validate", 1)
        try:
            page_count = self.parser.validate(data, metadata)
        except IngestionError as e:
            logger.warning(f"Rejected {metadata.filename}: {e}")
            return IngestSummary(success=False, error=e.message, error_code=e.code,
                                 processing_time_ms=_elapsed_ms(t0))

        content_hash = compute_content_hash(data)
        doc_id = compute_doc_id(metadata.owner_id, content_hash)
        key = request_key_for(doc_id)

        with self._doc_lock(doc_id):
            if not force:
                cached = self._reuse_previous(doc_id, key, metadata, mode, t0)
                if cached is not None:
                    return cached

            logger.info(f"Ingesting {metadata.filename} as {doc_id} ({page_count} pages, mode={mode})")
            if self.status_board is not None:
                self.status_board.begin(key, owner_id=metadata.owner_id, content_hash=content_hash)

            try:
                return self._run(data, metadata, mode, cancel_event, doc_id, key,
                                 content_hash, page_count, t0, _stage)
            except Exception as e:
                # Never leave a key in "processing".
                code = e.code if isinstance(e, IngestionError) else "INGESTION_FAILED"
                message = e.message if isinstance(e, IngestionError) else str(e)
                if not isinstance(e, IngestionError):
                    logger.exception(f"Ingestion of {doc_id} crashed")
                self._finish(key, "error", error=message, error_code=code)
                return IngestSummary(success=False, request_key=key, doc_id=doc_id,
                                     error=message, error_code=code,
                                     processing_time_ms=_elapsed_ms(t0))

    def _run(
        self,
        data: bytes,
        metadata: DocumentMetadata,
        mode: str,
        cancel_event: Optional[threading.Event],
        doc_id: str,
        key: str,
        content_hash: str,
        page_count: int,
        t0: float,
        _stage: Callable[[str, int], None],
    ) -> IngestSummary:
        _stage("read_pages", 2)
        sources = self.parser.read_pages(data)

        _stage("extract_and_chunk", 3)
        pages, chunks, tables, cancelled = self._process_pages(sources, doc_id, key, cancel_event)

        usable = [p for p in pages if p.has_text]
        if not usable:
            if cancelled:
                raise IngestionCancelled(f"Ingestion of {metadata.filename} cancelled before any page was indexed")
            raise NoUsableTextError(f"No usable text in any of {len(pages)} pages of {metadata.filename}")

        partial = cancelled or any(p.error for p in pages) or len(pages) < len(sources)
        result = ParseResult(
            success=True,
            pages=pages,
            chunks=chunks,
            tables=tables,
            processing_time_ms=_elapsed_ms(t0),
            partial_failure=partial,
        )
        document = Document(
            doc_id=doc_id,
            filename=metadata.filename,
            size=len(data),
            page_count=page_count,
            content_hash=content_hash,
            owner_id=metadata.owner_id,
        )

        _stage("persist", 4)
        persist_error = self._persist(key, document, result, mode)

        _stage("done", 5)
        if persist_error is not None and not self._has_ephemeral(key, mode):
            self._finish(key, "error", error=persist_error.message, error_code=persist_error.code)
        else:
            self._finish(key, "ready", parts=len(chunks), pages=len(pages))

        if persist_error is None:
            self._remember(doc_id, (metadata.owner_id, result, document))

        ocr_pages = sum(1 for p in pages if p.ocr_used)
        logger.info(
            f"Ingested {metadata.filename}: {len(pages)} pages (ocr={ocr_pages}), "
            f"{len(chunks)} chunks, {len(tables)} tables in {result.processing_time_ms}ms"
            + (" [partial]" if partial else "")
        )

        return IngestSummary(
            success=persist_error is None,
            request_key=key,
            doc_id=doc_id,
            page_count=len(pages),
            chunk_count=len(chunks),
            table_count=len(tables),
            processing_time_ms=_elapsed_ms(t0),
            partial_failure=partial,
            error=persist_error.message if persist_error else None,
            error_code=persist_error.code if persist_error else None,
        )

    def _process_pages(
        self,
        sources: List[PageSource],
        doc_id: str,
        key: str,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[List[Page], List[Chunk], List[TableCandidate], bool]:
        """Extract pages concurrently; detect tables and chunk in page order."""
        pages: List[Page] = []
        chunks: List[Chunk] = []
        tables: List[TableCandidate] = []
        cancelled = False

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="page")
        try:
            futures: List[Tuple[PageSource, Future]] = [
                (src, executor.submit(self.extractor.extract, src, self.options)) for src in sources
            ]

            for src, future in futures:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.info(f"{doc_id}: cancelled at page {src.page_number}/{len(sources)}")
                    break

                page = self._await_page(src, future)
                page_chunks = self.chunker.chunk_page(doc_id, page.page_number, page.text)
                page_tables = self.table_detector.detect(page.items, page.page_number, doc_id=doc_id)

                pages.append(page)
                chunks.extend(page_chunks)
                tables.extend(page_tables)

                if self.status_board is not None:
                    self.status_board.advance(key, parts=len(page_chunks), pages=1)
        finally:
            # Pending pages are dropped on cancel; running ones finish in the background.
            executor.shutdown(wait=False, cancel_futures=True)

        return pages, chunks, tables, cancelled

    def _await_page(self, src: PageSource, future: Future) -> Page:
        try:
            return future.result(timeout=self.page_timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"Page {src.page_number} exceeded {self.page_timeout}s, keeping structural text")
            structural = build_structural_text(src.items)
            return Page(
                page_number=src.page_number,
                text=structural.strip(),
                structural_text=structural,
                items=src.items,
                confidence=LOW_CONFIDENCE,
                error=f"page extraction timed out after {self.page_timeout}s",
            )

    def _persist(
        self,
        key: str,
        document: Document,
        result: ParseResult,
        mode: str,
    ) -> Optional[PersistenceError]:
        """Write ephemeral copy first, then durable. Returns the durable error, if any."""
        if mode in ("ephemeral", "both") and self.context_store is not None:
            self.context_store.put(key, result.chunks, metadata=_context_metadata(document, result))

        if mode in ("durable", "both") and self.durable_store is not None:
            try:
                self.durable_store.save_document(document, result.chunks, result.tables)
            except PersistenceError as e:
                logger.error(f"Durable write failed for {document.doc_id}: {e}")
                return e
        return None

    def _has_ephemeral(self, key: str, mode: str) -> bool:
        return mode in ("ephemeral", "both") and self.context_store is not None and self.context_store.has(key)

    def _reuse_previous(
        self,
        doc_id: str,
        key: str,
        metadata: DocumentMetadata,
        mode: str,
        t0: float,
    ) -> Optional[IngestSummary]:
        """Return the earlier result for identical content, republishing an expired ephemeral copy."""
        with self._doc_locks_guard:
            previous = self._results.get(doc_id)
        if previous is None:
            return None
        owner_id, result, document = previous
        if owner_id != metadata.owner_id:
            return None

        if mode in ("durable", "both") and self.durable_store is not None \
                and self.durable_store.get_document(doc_id) is None:
            return None
        if mode in ("ephemeral", "both") and self.context_store is not None and not self.context_store.has(key):
            logger.info(f"Republishing cached chunks for {doc_id}")
            self.context_store.put(key, result.chunks, metadata=_context_metadata(document, result))

        if self.status_board is not None:
            self.status_board.begin(key, owner_id=owner_id, content_hash=document.content_hash)
            self._finish(key, "ready", parts=len(result.chunks), pages=len(result.pages))

        logger.info(f"Skipping {metadata.filename}: already ingested as {doc_id}")
        return IngestSummary(
            success=True,
            request_key=key,
            doc_id=doc_id,
            page_count=len(result.pages),
            chunk_count=len(result.chunks),
            table_count=len(result.tables),
            processing_time_ms=_elapsed_ms(t0),
            partial_failure=result.partial_failure,
            cached=True,
        )

    def _remember(self, doc_id: str, entry: Tuple[str, ParseResult, Document]) -> None:
        with self._doc_locks_guard:
            self._results.pop(doc_id, None)
            self._results[doc_id] = entry
            while len(self._results) > self.result_cache_size:
                self._results.popitem(last=False)

    def _finish(self, key: str, status: str, **kwargs) -> None:
        if self.status_board is not None:
            self.status_board.finish(key, status, **kwargs)

    def forget(self, doc_id: str) -> None:
        """Drop the cached result for doc_id so the next upload reprocesses."""
        with self._doc_locks_guard:
            self._results.pop(doc_id, None)


def _context_metadata(document: Document, result: ParseResult) -> dict:
    return {
        "doc_id": document.doc_id,
        "original_filename": document.filename,
        "owner_id": document.owner_id,
        "content_hash": document.content_hash,
        "pages_indexed": len(result.pages),
    }


def _elapsed_ms(t0: float) -> int:
    return int((time.time() - t0) * 1000)
