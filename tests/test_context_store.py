"""
Ephemeral context store: TTL expiry, capacity eviction, timers and sweeper.
A fake clock drives lazy expiry; real timers are exercised with short TTLs.
"""

import os
import sys
import time

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from context.store import EphemeralContextStore
from ingestion.models import Chunk


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _chunks(doc_id: str, n: int = 2):
    return [
        Chunk(chunk_id=f"{doc_id}_p1_c{i}", doc_id=doc_id, page=1, index=i, content=f"chunk {i} of {doc_id}")
        for i in range(n)
    ]


def _store(clock, **kwargs):
    kwargs.setdefault("default_ttl_seconds", 60)
    kwargs.setdefault("max_contexts", 10)
    return EphemeralContextStore(clock=clock, enable_timers=False, **kwargs)


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_put_and_get():
    store = _store(FakeClock())
    store.put("mem-a", _chunks("a"), metadata={"owner_id": "alice"})

    chunks = store.get("mem-a")
    assert [c.chunk_id for c in chunks] == ["a_p1_c0", "a_p1_c1"]
    assert store.get_context("mem-a").metadata == {"owner_id": "alice"}
    assert store.has("mem-a")
    assert store.get("mem-missing") is None


def test_entry_expires_after_ttl():
    clock = FakeClock()
    store = _store(clock)
    store.put("mem-a", _chunks("a"), ttl_seconds=30)

    clock.advance(29)
    assert store.get("mem-a") is not None

    clock.advance(1)
    assert store.get("mem-a") is None
    assert store.context_count == 0
    assert store.stats()["expirations"] == 1


def test_capacity_evicts_oldest():
    store = _store(FakeClock(), max_contexts=2)
    store.put("mem-a", _chunks("a"))
    store.put("mem-b", _chunks("b"))
    store.put("mem-c", _chunks("c"))

    assert store.get("mem-a") is None
    assert store.get("mem-b") is not None
    assert store.get("mem-c") is not None
    assert store.stats()["evictions"] == 1


def test_count_never_exceeds_capacity():
    store = _store(FakeClock(), max_contexts=3)
    for i in range(10):
        store.put(f"mem-{i}", _chunks(str(i), 1))
        assert store.context_count <= 3

    assert store.stats()["keys"] == ["mem-7", "mem-8", "mem-9"]


def test_reput_refreshes_insertion_order():
    clock = FakeClock()
    store = _store(clock, max_contexts=2)
    store.put("mem-a", _chunks("a"))
    store.put("mem-b", _chunks("b"))
    clock.advance(10)
    store.put("mem-a", _chunks("a", 3))
    store.put("mem-c", _chunks("c"))

    assert store.get("mem-b") is None
    assert len(store.get("mem-a")) == 3
    assert store.get_context("mem-a").created_at == 1010.0


def test_returned_chunks_are_a_copy():
    store = _store(FakeClock())
    store.put("mem-a", _chunks("a"))

    store.get("mem-a").clear()

    assert len(store.get("mem-a")) == 2


def test_delete():
    store = _store(FakeClock())
    store.put("mem-a", _chunks("a"))

    assert store.delete("mem-a")
    assert not store.delete("mem-a")
    assert not store.has("mem-a")


def test_clear_expired_counts_removed():
    clock = FakeClock()
    store = _store(clock)
    store.put("mem-short", _chunks("s"), ttl_seconds=5)
    store.put("mem-long", _chunks("l"), ttl_seconds=500)

    clock.advance(10)

    assert store.clear_expired() == 1
    assert store.stats()["keys"] == ["mem-long"]


def test_stats_reports_oldest_age():
    clock = FakeClock()
    store = _store(clock)
    assert store.stats()["oldest_age_seconds"] == 0.0

    store.put("mem-a", _chunks("a"))
    clock.advance(42)
    stats = store.stats()

    assert stats["contexts"] == 1
    assert stats["max_contexts"] == 10
    assert stats["default_ttl_seconds"] == 60
    assert stats["oldest_age_seconds"] == 42


def test_invalid_limits_rejected():
    with pytest.raises(ValueError):
        EphemeralContextStore(default_ttl_seconds=0)
    with pytest.raises(ValueError):
        EphemeralContextStore(max_contexts=0)
    store = _store(FakeClock())
    with pytest.raises(ValueError):
        store.put("mem-a", _chunks("a"), ttl_seconds=-1)


def test_timer_removes_entry_without_reads():
    store = EphemeralContextStore(default_ttl_seconds=0.05, max_contexts=5)
    try:
        store.put("mem-a", _chunks("a"))
        assert _wait_until(lambda: store.context_count == 0)
        assert store.stats()["expirations"] == 1
    finally:
        store.close()


def test_replaced_entry_survives_old_timer():
    store = EphemeralContextStore(default_ttl_seconds=0.05, max_contexts=5)
    try:
        store.put("mem-a", _chunks("a"))
        store.put("mem-a", _chunks("a", 3), ttl_seconds=60)
        time.sleep(0.15)
        assert len(store.get("mem-a")) == 3
    finally:
        store.close()


def test_sweeper_clears_expired_entries():
    clock = FakeClock()
    store = _store(clock, sweep_interval_seconds=0.02)
    store.put("mem-a", _chunks("a"), ttl_seconds=5)
    clock.advance(10)

    store.start()
    try:
        assert _wait_until(lambda: store.context_count == 0)
    finally:
        store.close()


def test_from_config_and_context_manager():
    config = {"context_ttl_seconds": 120, "max_contexts": 7, "context_sweep_seconds": 30}
    with EphemeralContextStore.from_config(config, enable_timers=False) as store:
        store.put("mem-a", _chunks("a"))
        assert store.default_ttl_seconds == 120
        assert store.max_contexts == 7
    assert store.context_count == 0


def test_expiry_listener_sees_expired_and_evicted_keys():
    clock = FakeClock()
    store = _store(clock, max_contexts=2)
    gone = []
    store.add_expiry_listener(gone.append)

    store.put("mem-a", _chunks("a"), ttl_seconds=5)
    store.put("mem-b", _chunks("b"), ttl_seconds=5)
    store.put("mem-c", _chunks("c"), ttl_seconds=500)
    assert gone == ["mem-a"]

    clock.advance(10)
    assert store.get("mem-b") is None
    assert gone == ["mem-a", "mem-b"]

    store.put("mem-d", _chunks("d"), ttl_seconds=1)
    clock.advance(2)
    assert store.clear_expired() == 1
    assert gone == ["mem-a", "mem-b", "mem-d"]


def test_delete_is_not_reported_to_expiry_listeners():
    store = _store(FakeClock())
    gone = []
    store.add_expiry_listener(gone.append)
    store.put("mem-a", _chunks("a"))

    store.delete("mem-a")

    assert gone == []


def test_failing_expiry_listener_does_not_block_others():
    clock = FakeClock()
    store = _store(clock)
    gone = []

    def _boom(key):
        raise RuntimeError("listener bug")

    store.add_expiry_listener(_boom)
    store.add_expiry_listener(gone.append)
    store.put("mem-a", _chunks("a"), ttl_seconds=1)
    clock.advance(5)

    assert store.clear_expired() == 1
    assert gone == ["mem-a"]
