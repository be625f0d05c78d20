"""
Status board transitions: processing -> ready/error, owner scoping, durable mirror.
"""

import os
import sys

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from context.status import StatusBoard
from ingestion.errors import PersistenceError
from ingestion.storage import DurableStore


def test_unknown_key_is_missing():
    assert StatusBoard().get("mem-nope").status == "missing"


def test_processing_then_ready():
    board = StatusBoard()
    board.begin("mem-a", owner_id="alice", content_hash="h")
    board.advance("mem-a", parts=2, pages=1)
    board.advance("mem-a", parts=3, pages=1)

    status = board.get("mem-a")
    assert status.status == "processing"
    assert (status.parts_indexed, status.pages_indexed) == (5, 2)

    final = board.finish("mem-a", "ready", parts=5, pages=2)
    assert final.status == "ready"
    assert final.is_terminal


def test_terminal_state_ignores_progress():
    board = StatusBoard()
    board.begin("mem-a")
    board.finish("mem-a", "error", error="boom", error_code="NO_USABLE_TEXT")

    board.advance("mem-a", parts=10, pages=10)

    status = board.get("mem-a")
    assert status.status == "error"
    assert status.parts_indexed == 0
    assert status.error_code == "NO_USABLE_TEXT"


def test_finish_never_lowers_counters():
    board = StatusBoard()
    board.begin("mem-a")
    board.advance("mem-a", parts=4, pages=2)

    final = board.finish("mem-a", "ready", parts=1, pages=1)

    assert (final.parts_indexed, final.pages_indexed) == (4, 2)


def test_begin_restarts_counters():
    board = StatusBoard()
    board.begin("mem-a")
    board.advance("mem-a", parts=4, pages=2)
    board.finish("mem-a", "ready")

    restarted = board.begin("mem-a")

    assert restarted.status == "processing"
    assert restarted.parts_indexed == 0


def test_invalid_transitions_rejected():
    board = StatusBoard()
    board.begin("mem-a")
    with pytest.raises(ValueError):
        board.finish("mem-a", "processing")
    with pytest.raises(ValueError):
        board.advance("mem-a", parts=-1)


def test_owner_mismatch_reads_missing():
    board = StatusBoard()
    board.begin("mem-a", owner_id="alice")

    assert board.get("mem-a", owner_id="alice").status == "processing"
    assert board.get("mem-a", owner_id="bob").status == "missing"


def test_status_survives_restart_via_durable_store(tmp_path):
    store = DurableStore(data_dir=str(tmp_path))
    board = StatusBoard(store)
    board.begin("mem-a", owner_id="alice")
    board.finish("mem-a", "ready", parts=3, pages=2)

    reloaded = StatusBoard(DurableStore(data_dir=str(tmp_path)))
    status = reloaded.get("mem-a", owner_id="alice")

    assert status.status == "ready"
    assert status.parts_indexed == 3


def test_forget_removes_mirrored_status(tmp_path):
    store = DurableStore(data_dir=str(tmp_path))
    board = StatusBoard(store)
    board.begin("mem-a")

    board.forget("mem-a")

    assert board.get("mem-a").status == "missing"
    assert store.read_status("mem-a") is None


def test_mirror_failure_keeps_memory_status(tmp_path, monkeypatch):
    store = DurableStore(data_dir=str(tmp_path))

    def _fail(status):
        raise PersistenceError("disk full")

    monkeypatch.setattr(store, "write_status", _fail)
    board = StatusBoard(store)

    board.begin("mem-a")
    board.finish("mem-a", "ready", parts=1, pages=1)

    assert board.get("mem-a").status == "ready"


def test_discard_drops_finished_status_only(tmp_path):
    store = DurableStore(data_dir=str(tmp_path))
    board = StatusBoard(store)
    board.begin("mem-done")
    board.finish("mem-done", "ready", parts=1, pages=1)
    board.begin("mem-busy")

    assert board.discard("mem-done")
    assert not board.discard("mem-busy")
    assert not board.discard("mem-done")

    assert board.status_count == 1
    assert store.read_status("mem-done") is None
    assert board.get("mem-busy").status == "processing"
