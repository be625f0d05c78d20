"""
Ephemeral context store - time-bounded in-memory cache of chunks keyed by request key.

Build one instance per process and pass it to whoever needs it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from ingestion.models import Chunk, StoredContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900  # 15 minutes
DEFAULT_MAX_CONTEXTS = 100
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


class EphemeralContextStore:
    """
    Thread-safe TTL cache with a soft capacity cap.

    - Entries expire after their TTL: a per-entry timer removes them, reads
      check expiry lazily, and a background sweep clears stragglers.
    - When full, the oldest-inserted entry is evicted. Re-putting a key
      counts as a fresh insertion.
    - Missing or expired keys read as None.
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_contexts: int = DEFAULT_MAX_CONTEXTS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        enable_timers: bool = True,
        start_sweeper: bool = False,
    ):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        if max_contexts < 1:
            raise ValueError("max_contexts must be >= 1")

        self.default_ttl_seconds = default_ttl_seconds
        self.max_contexts = max_contexts
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._enable_timers = enable_timers

        self._entries: "OrderedDict[str, StoredContext]" = OrderedDict()
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.RLock()

        self._evictions = 0
        self._expirations = 0
        self._expiry_listeners: List[Callable[[str], None]] = []

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        if start_sweeper:
            self.start()

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "EphemeralContextStore":
        return cls(
            default_ttl_seconds=config.get("context_ttl_seconds", DEFAULT_TTL_SECONDS),
            max_contexts=config.get("max_contexts", DEFAULT_MAX_CONTEXTS),
            sweep_interval_seconds=config.get("context_sweep_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS),
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    def put(
        self,
        key: str,
        chunks: Iterable[Chunk],
        ttl_seconds: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredContext:
        """
        Store chunks under key, replacing any previous entry.

        Args:
            key: Request key
            chunks: Chunks to cache
            ttl_seconds: Lifetime (default_ttl_seconds if None)
            metadata: Opaque caller metadata (filename, owner, hash, pages)

        Returns:
            The stored context
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")

        context = StoredContext(
            key=key,
            chunks=list(chunks),
            created_at=self._clock(),
            ttl_seconds=ttl,
            metadata=dict(metadata or {}),
        )

        evicted: List[str] = []
        with self._lock:
            if key in self._entries:
                self._remove(key)

            while len(self._entries) >= self.max_contexts:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self._evictions += 1
                evicted.append(oldest)
                logger.info(f"Evicted oldest context {oldest} (capacity {self.max_contexts})")

            self._entries[key] = context
            if self._enable_timers:
                self._arm_timer(key, context)

        self._notify_expired(evicted)
        logger.debug(f"Stored context {key}: {len(context.chunks)} chunks, ttl={ttl}s")
        return context

    def get(self, key: str) -> Optional[List[Chunk]]:
        """Chunks stored under key, or None if absent or expired."""
        context = self.get_context(key)
        return context.chunks if context is not None else None

    def get_context(self, key: str) -> Optional[StoredContext]:
        """Full stored context for key, or None if absent or expired."""
        with self._lock:
            context = self._entries.get(key)
            if context is None:
                return None
            expired = context.is_expired(self._clock())
            if expired:
                self._remove(key)
                self._expirations += 1
            else:
                return context.model_copy(update={
                    "chunks": list(context.chunks),
                    "metadata": dict(context.metadata),
                })

        logger.debug(f"Context {key} expired on read")
        self._notify_expired([key])
        return None

    def has(self, key: str) -> bool:
        return self.get_context(key) is not None

    def delete(self, key: str) -> bool:
        """Remove key. Returns True if an entry was removed."""
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            return True

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def clear_expired(self) -> int:
        """Remove every expired entry. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, ctx in self._entries.items() if ctx.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._expirations += len(expired)

        if expired:
            logger.info(f"Cleared {len(expired)} expired contexts")
            self._notify_expired(expired)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            for key in list(self._entries):
                self._remove(key)

    @property
    def context_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        """Snapshot of size, limits and counters."""
        now = self._clock()
        with self._lock:
            oldest = next(iter(self._entries.values()), None)
            return {
                "contexts": len(self._entries),
                "max_contexts": self.max_contexts,
                "default_ttl_seconds": self.default_ttl_seconds,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "oldest_age_seconds": (now - oldest.created_at) if oldest else 0.0,
                "keys": list(self._entries),
            }

    # -------------------------------------------------------------------------
    # Timers and sweeper
    # -------------------------------------------------------------------------

    def _arm_timer(self, key: str, context: StoredContext) -> None:
        timer = threading.Timer(context.ttl_seconds, self._expire, args=(key, context))
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    def _expire(self, key: str, context: StoredContext) -> None:
        with self._lock:
            # A replaced entry has its own timer.
            if self._entries.get(key) is not context:
                return
            self._remove(key)
            self._expirations += 1
        logger.debug(f"Context {key} expired")
        self._notify_expired([key])

    def add_expiry_listener(self, listener: Callable[[str], None]) -> None:
        """Call listener(key) after a context expires or is evicted. Deletes are not reported."""
        self._expiry_listeners.append(listener)

    def _notify_expired(self, keys: List[str]) -> None:
        # Runs without the store lock so listeners may read the store.
        for key in keys:
            for listener in self._expiry_listeners:
                try:
                    listener(key)
                except Exception:
                    logger.exception(f"Expiry listener failed for {key}")

    def _remove(self, key: str) -> None:
        """Drop entry and cancel its timer. Caller holds the lock."""
        self._entries.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def start(self) -> None:
        """Start the background sweep thread (idempotent)."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="context-sweeper", daemon=True
            )
            self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            self.clear_expired()

    def close(self) -> None:
        """Stop the sweeper and cancel all timers. Entries are dropped."""
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None:
            sweeper.join(timeout=1.0)
        self.clear()

    def __enter__(self) -> "EphemeralContextStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
