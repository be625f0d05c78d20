"""
Status board - per-request-key readiness status shared by the ingester and pollers.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from ingestion.errors import PersistenceError
from ingestion.models import ReadinessStatus
from ingestion.storage import DurableStore

logger = logging.getLogger(__name__)


class StatusBoard:
    """
    Lock-guarded map of request key -> ReadinessStatus.

    Counters only grow while a run is processing; ready and error are
    terminal until the next begin(). Unknown keys and owner mismatches read
    as "missing". Begin and finish are mirrored to the durable store when
    one is given, so status outlives the process.
    """

    def __init__(self, store: Optional[DurableStore] = None):
        self.store = store
        self._statuses: Dict[str, ReadinessStatus] = {}
        self._lock = threading.Lock()

    def begin(self, key: str, owner_id: Optional[str] = None, content_hash: Optional[str] = None) -> ReadinessStatus:
        """Start (or restart) a run for key with zeroed counters."""
        status = ReadinessStatus(
            key=key,
            status="processing",
            owner_id=owner_id,
            content_hash=content_hash,
        )
        with self._lock:
            self._statuses[key] = status
        self._mirror(status)
        return status

    def advance(self, key: str, parts: int = 0, pages: int = 0) -> Optional[ReadinessStatus]:
        """Add indexed parts/pages to a processing run. Ignored once terminal."""
        if parts < 0 or pages < 0:
            raise ValueError("progress deltas must be non-negative")
        with self._lock:
            current = self._statuses.get(key)
            if current is None or current.is_terminal:
                return current
            updated = current.model_copy(update={
                "parts_indexed": current.parts_indexed + parts,
                "pages_indexed": current.pages_indexed + pages,
            })
            self._statuses[key] = updated
        return updated

    def finish(
        self,
        key: str,
        status: str,
        parts: Optional[int] = None,
        pages: Optional[int] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> ReadinessStatus:
        """Move key to a terminal state ("ready" or "error")."""
        if status not in ("ready", "error"):
            raise ValueError(f"Terminal status must be ready or error, got {status}")
        with self._lock:
            current = self._statuses.get(key) or ReadinessStatus(key=key)
            final = current.model_copy(update={
                "status": status,
                "parts_indexed": max(current.parts_indexed, parts or 0),
                "pages_indexed": max(current.pages_indexed, pages or 0),
                "error": error,
                "error_code": error_code,
            })
            self._statuses[key] = final
        self._mirror(final)
        return final

    def get(self, key: str, owner_id: Optional[str] = None) -> ReadinessStatus:
        """Current status for key; "missing" when unknown or owned by someone else."""
        with self._lock:
            status = self._statuses.get(key)

        if status is None and self.store is not None:
            status = self.store.read_status(key)
            if status is not None:
                with self._lock:
                    status = self._statuses.setdefault(key, status)

        if status is None:
            return ReadinessStatus(key=key, status="missing")
        if owner_id is not None and status.owner_id is not None and status.owner_id != owner_id:
            logger.debug(f"Owner mismatch for {key}")
            return ReadinessStatus(key=key, status="missing")
        return status

    def forget(self, key: str) -> None:
        with self._lock:
            self._statuses.pop(key, None)
        if self.store is not None:
            self.store.delete_status(key)

    def discard(self, key: str) -> bool:
        """
        Drop a finished status whose content is gone. A run still
        processing is kept. Returns True if a status was dropped.
        """
        with self._lock:
            current = self._statuses.get(key)
            if current is not None and not current.is_terminal:
                return False
            self._statuses.pop(key, None)
        if self.store is not None:
            return self.store.delete_status(key) or current is not None
        return current is not None

    @property
    def status_count(self) -> int:
        with self._lock:
            return len(self._statuses)

    def _mirror(self, status: ReadinessStatus) -> None:
        if self.store is None:
            return
        try:
            self.store.write_status(status)
        except PersistenceError as e:
            logger.warning(f"Status for {status.key} kept in memory only: {e}")
