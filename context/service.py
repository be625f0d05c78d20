"""
Context service - ingest, poll, search and delete document contexts.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Optional, Union

from ingestion.models import Chunk, DocumentMetadata, IngestSummary, ReadinessStatus, ReadinessSummary
from ingestion.pipeline import REQUEST_KEY_PREFIX, IngestionPipeline, doc_id_from_key
from ingestion.storage import DurableStore
from retrieval.retriever import Retriever
from shared import DEFAULT_CONFIG_PATH, load_config

from .readiness import DEFAULT_REQUIRED_PARTS_CAP, readiness_summary
from .status import StatusBoard
from .store import EphemeralContextStore

logger = logging.getLogger(__name__)


class ContextService:
    """
    Entry point for callers: one instance per process, shared by all requests.

    Every call is scoped to an owner. Contexts owned by someone else read
    as missing and are never searched or deleted.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        context_store: EphemeralContextStore,
        status_board: StatusBoard,
        retriever: Retriever,
        durable_store: Optional[DurableStore] = None,
        required_parts_cap: int = DEFAULT_REQUIRED_PARTS_CAP,
    ):
        self.pipeline = pipeline
        self.context_store = context_store
        self.status_board = status_board
        self.retriever = retriever
        self.durable_store = durable_store
        self.required_parts_cap = required_parts_cap
        self.context_store.add_expiry_listener(self._context_gone)

    @classmethod
    def from_config(cls, config: dict, **pipeline_kwargs) -> "ContextService":
        """
        Wire every component from one config dict.

        Args:
            config: Configuration dictionary
            pipeline_kwargs: Overrides passed to IngestionPipeline (extractor, parser)

        Returns:
            Configured ContextService
        """
        durable = DurableStore.from_config(config) if config.get("ingest_mode", "both") != "ephemeral" else None
        store = EphemeralContextStore.from_config(config, start_sweeper=config.get("context_sweeper", True))
        board = StatusBoard(durable)
        pipeline = IngestionPipeline(
            config,
            context_store=store,
            status_board=board,
            durable_store=durable,
            **pipeline_kwargs,
        )
        return cls(
            pipeline=pipeline,
            context_store=store,
            status_board=board,
            retriever=Retriever.from_config(config),
            durable_store=durable,
            required_parts_cap=config.get("required_parts_cap", DEFAULT_REQUIRED_PARTS_CAP),
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def ingest(
        self,
        data: bytes,
        metadata: DocumentMetadata,
        mode: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
    ) -> IngestSummary:
        """Ingest uploaded bytes. Failures come back as a summary with error_code."""
        return self.pipeline.ingest(data, metadata, mode=mode, cancel_event=cancel_event, force=force)

    def get_status(self, key: str, owner_id: Optional[str] = None) -> ReadinessStatus:
        """
        Status of a request key. Never raises.

        A ready key whose content is gone from both stores reads as missing.
        """
        status = self.status_board.get(key, owner_id)
        if status.status == "ready" and not self._content_available(key):
            self.status_board.discard(key)
            return ReadinessStatus(key=key, status="missing")
        return status

    def readiness(self, key: str, owner_id: Optional[str] = None) -> ReadinessSummary:
        """Polling view for a key, with retry hint while processing."""
        status = self.get_status(key, owner_id)
        return readiness_summary(
            status.status,
            status.parts_indexed,
            status.pages_indexed,
            self.required_parts_cap,
        )

    def search(
        self,
        owner_id: str,
        key_or_doc_ids: Union[str, Iterable[str]],
        query: str,
        limit: Optional[int] = None,
    ) -> List[Chunk]:
        """
        Ranked chunks for query across the given request key or doc ids.

        Ephemeral contexts are read first; durable storage covers expired
        or durable-only documents.
        """
        ids = [key_or_doc_ids] if isinstance(key_or_doc_ids, str) else list(key_or_doc_ids)
        chunks: List[Chunk] = []
        for ident in ids:
            chunks.extend(self._resolve_chunks(owner_id, ident))

        if not chunks:
            logger.info(f"No chunks available for {ids}")
            return []
        return self.retriever.search(chunks, query, limit)

    def delete_context(self, key: str, owner_id: Optional[str] = None) -> bool:
        """Drop the ephemeral context and status for key. Returns True if a context was removed."""
        if owner_id is not None:
            context = self.context_store.get_context(key)
            owner = context.metadata.get("owner_id") if context else None
            if owner is not None and owner != owner_id:
                logger.warning(f"Refusing to delete {key}: owner mismatch")
                return False

        removed = self.context_store.delete(key)
        if removed:
            # Durable copies keep their status so the doc stays pollable.
            if not self._content_available(key):
                self.status_board.forget(key)
                self.pipeline.forget(doc_id_from_key(key))
            logger.info(f"Deleted context {key}")
        return removed

    def close(self) -> None:
        self.context_store.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve_chunks(self, owner_id: str, ident: str) -> List[Chunk]:
        if ident.startswith(REQUEST_KEY_PREFIX):
            context = self.context_store.get_context(ident)
            if context is not None:
                if context.metadata.get("owner_id", owner_id) != owner_id:
                    return []
                return context.chunks

        if self.durable_store is None:
            return []
        return self.durable_store.load_chunks([doc_id_from_key(ident)], owner_id=owner_id)

    def _context_gone(self, key: str) -> None:
        """Expiry hook: forget the status of a context that has no durable copy."""
        if not self._content_available(key) and self.status_board.discard(key):
            logger.debug(f"Dropped status of expired context {key}")

    def _content_available(self, key: str) -> bool:
        if self.context_store.has(key):
            return True
        if self.durable_store is None:
            return False
        return self.durable_store.get_document(doc_id_from_key(key)) is not None


def create_context_service(config_path: str = DEFAULT_CONFIG_PATH) -> ContextService:
    """
    Create the context service from config.

    Args:
        config_path: Path to master_config.yaml

    Returns:
        Configured ContextService instance
    """
    config = load_config(config_path, force_reload=True)
    return ContextService.from_config(config)
