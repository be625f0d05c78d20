"""
Durable storage - JSONL files for documents, chunks and tables plus per-key status files.
Records for a doc_id are replaced wholesale; rewrites go through a temp file and rename.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from typing import Callable, Iterable, List, Optional, Set, TypeVar

from shared import retry_with_backoff

from .errors import PersistenceError
from .models import Chunk, Document, ReadinessStatus, TableCandidate

logger = logging.getLogger(__name__)

R = TypeVar("R")


class DurableStore:
    """
    File-backed store under data_dir:
        documents.jsonl, chunks.jsonl, tables.jsonl, status/{key}.json
    """

    def __init__(
        self,
        data_dir: str = "data",
        max_retries: int = 3,
        backoff_base: float = 0.5,
    ):
        self.data_dir = data_dir
        self.max_retries = max_retries
        self.backoff_base = backoff_base

        self.documents_file = os.path.join(data_dir, "documents.jsonl")
        self.chunks_file = os.path.join(data_dir, "chunks.jsonl")
        self.tables_file = os.path.join(data_dir, "tables.jsonl")
        self.status_dir = os.path.join(data_dir, "status")

        self._lock = threading.Lock()
        os.makedirs(self.status_dir, exist_ok=True)

    @classmethod
    def from_config(cls, config: dict) -> "DurableStore":
        return cls(
            data_dir=config.get("data_dir", "data"),
            max_retries=config.get("persist_max_retries", 3),
            backoff_base=config.get("persist_backoff_base", 0.5),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _with_retries(self, func: Callable[..., R], *args) -> R:
        wrapped = retry_with_backoff(
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            exceptions=(OSError,),
        )(func)
        try:
            return wrapped(*args)
        except OSError as e:
            raise PersistenceError(f"{func.__name__} failed after {self.max_retries} attempts: {e}") from e

    def save_document(
        self,
        document: Document,
        chunks: List[Chunk],
        tables: Optional[List[TableCandidate]] = None,
    ) -> None:
        """
        Replace every record of document.doc_id with the given ones.

        Raises:
            PersistenceError: write failed after bounded retries
        """
        self._with_retries(self._write_document, document, chunks, tables or [])
        logger.info(
            f"Persisted doc_id={document.doc_id}: {len(chunks)} chunks, {len(tables or [])} tables"
        )

    def _write_document(self, document: Document, chunks: List[Chunk], tables: List[TableCandidate]) -> None:
        doc_id = document.doc_id
        with self._lock:
            # The document record is written last; it marks the records as complete.
            self._replace_lines(self.documents_file, doc_id, [], Document)
            self._replace_lines(self.chunks_file, doc_id, [c.to_jsonl() for c in chunks], Chunk)
            self._replace_lines(self.tables_file, doc_id, [t.to_jsonl() for t in tables], TableCandidate)
            self._replace_lines(self.documents_file, doc_id, [document.to_jsonl()], Document)

    def delete_document(self, doc_id: str) -> bool:
        """Remove all records of doc_id. Returns True if a document was removed."""
        existed = self.get_document(doc_id) is not None

        def _delete() -> None:
            with self._lock:
                self._replace_lines(self.documents_file, doc_id, [], Document)
                self._replace_lines(self.chunks_file, doc_id, [], Chunk)
                self._replace_lines(self.tables_file, doc_id, [], TableCandidate)

        self._with_retries(_delete)
        if existed:
            logger.info(f"Removed durable records for doc_id={doc_id}")
        return existed

    def _replace_lines(self, path: str, doc_id: str, new_lines: Iterable[str], model) -> int:
        """Rewrite path without doc_id's lines, then append new_lines. Returns count removed."""
        remaining: List[str] = []
        removed = 0
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = model.from_jsonl(line)
                    except ValueError as e:
                        logger.warning(f"Keeping unparsable line in {path}: {e}")
                        remaining.append(line)
                        continue
                    if record.doc_id == doc_id:
                        removed += 1
                    else:
                        remaining.append(line)

        self._atomic_write(path, remaining + list(new_lines))
        return removed

    def _atomic_write(self, path: str, lines: List[str]) -> None:
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".jsonl")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _read(self, path: str, model) -> list:
        records = []
        if not os.path.exists(path):
            return records
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(model.from_jsonl(line))
                except ValueError as e:
                    logger.warning(f"Failed to parse record in {path}: {e}")
        return records

    def list_documents(self, owner_id: Optional[str] = None) -> List[Document]:
        docs = self._read(self.documents_file, Document)
        if owner_id is not None:
            docs = [d for d in docs if d.owner_id == owner_id]
        return docs

    def get_document(self, doc_id: str) -> Optional[Document]:
        for doc in self._read(self.documents_file, Document):
            if doc.doc_id == doc_id:
                return doc
        return None

    def load_chunks(self, doc_ids: Optional[Iterable[str]] = None, owner_id: Optional[str] = None) -> List[Chunk]:
        """
        Load chunks, optionally restricted to doc_ids and to documents owned by owner_id.
        Chunks come back in (doc order of doc_ids, page, index) order.
        """
        wanted: Optional[Set[str]] = set(doc_ids) if doc_ids is not None else None
        if owner_id is not None:
            owned = {d.doc_id for d in self.list_documents(owner_id)}
            wanted = owned if wanted is None else wanted & owned

        chunks = [
            c for c in self._read(self.chunks_file, Chunk)
            if wanted is None or c.doc_id in wanted
        ]
        chunks.sort(key=lambda c: (c.doc_id, c.page, c.index))
        return chunks

    def load_tables(self, doc_id: str) -> List[TableCandidate]:
        return [t for t in self._read(self.tables_file, TableCandidate) if t.doc_id == doc_id]

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _status_path(self, key: str) -> str:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return os.path.join(self.status_dir, f"{safe}.json")

    def write_status(self, status: ReadinessStatus) -> None:
        """Persist status for its key (atomic replace)."""
        path = self._status_path(status.key)
        self._with_retries(self._atomic_write, path, [status.to_jsonl()])

    def read_status(self, key: str) -> Optional[ReadinessStatus]:
        path = self._status_path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return ReadinessStatus.from_jsonl(f.read().strip())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable status file {path}: {e}")
            return None

    def delete_status(self, key: str) -> bool:
        path = self._status_path(key)
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True
