"""
Context service: ingest → poll → search → delete, scoped by owner.
"""

import os
import sys
import time

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import shared
from context.service import ContextService, create_context_service
from ingestion.extractor import PageExtractor
from ingestion.models import DocumentMetadata, TextItem
from ingestion.parser import PageSource, PDFParser

PAGES = [
    ["Confidentiality Notice", "This memorandum may not be reproduced without consent of the Sponsor."],
    ["Financial Summary", "Net operating income of $1,202,500 supports a cap rate of 6.50%."],
    ["Location", "The asset sits near the regional employment corridor."],
]


def _items(lines):
    items = []
    for row, line in enumerate(lines):
        x = 50.0
        for word in line.split():
            width = len(word) * 5.0
            items.append(TextItem(text=word, x0=x, x1=x + width, top=20.0 * row, bottom=20.0 * row + 10))
            x += width + 5.0
    return items


class FakeParser(PDFParser):
    def get_page_count(self, data):
        return len(PAGES)

    def read_pages(self, data):
        return [PageSource(page_number=i, items=_items(lines)) for i, lines in enumerate(PAGES, 1)]


def _service(tmp_path, **overrides) -> ContextService:
    config = {
        "ocr_backend": "none",
        "ocr_trigger_chars": 20,
        "data_dir": str(tmp_path),
        "context_sweeper": False,
        "persist_backoff_base": 0,
        "search_limit": 5,
    }
    config.update(overrides)
    return ContextService.from_config(config, extractor=PageExtractor(), parser=FakeParser())


@pytest.fixture
def service(tmp_path):
    svc = _service(tmp_path)
    yield svc
    svc.close()


def _ingest(service, owner="alice"):
    return service.ingest(b"%PDF-1.4 memo", DocumentMetadata(filename="memo.pdf", owner_id=owner))


def test_ingest_then_search_by_request_key(service):
    summary = _ingest(service)

    results = service.search("alice", summary.request_key, "What is the NOI?")

    assert results
    assert results[0].page == 2
    assert "1,202,500" in results[0].content


def test_search_by_doc_id_uses_durable_store(service):
    summary = _ingest(service)
    service.context_store.delete(summary.request_key)

    results = service.search("alice", [summary.doc_id], "cap rate")

    assert results[0].page == 2


def test_search_never_crosses_owners(service):
    summary = _ingest(service)

    assert service.search("bob", summary.request_key, "cap rate") == []
    assert service.search("bob", [summary.doc_id], "cap rate") == []


def test_generic_question_still_returns_chunks(service):
    summary = _ingest(service)

    results = service.search("alice", summary.request_key, "anything about parking?")

    assert results


def test_status_and_readiness(service):
    summary = _ingest(service)

    status = service.get_status(summary.request_key, owner_id="alice")
    assert status.status == "ready"
    assert status.pages_indexed == 3

    view = service.readiness(summary.request_key, owner_id="alice")
    assert view.required_parts == 2
    assert view.is_ready
    assert view.percent_ready == 100


def test_status_for_other_owner_or_unknown_key_is_missing(service):
    summary = _ingest(service)

    assert service.get_status(summary.request_key, owner_id="bob").status == "missing"
    assert service.get_status("mem-unknown").status == "missing"
    assert service.readiness("mem-unknown").status == "missing"


def test_delete_context_keeps_durable_status(service):
    summary = _ingest(service)

    assert not service.delete_context(summary.request_key, owner_id="bob")
    assert service.delete_context(summary.request_key, owner_id="alice")
    assert not service.delete_context(summary.request_key, owner_id="alice")

    # Durable copy still answers
    assert service.get_status(summary.request_key, owner_id="alice").status == "ready"


def test_ephemeral_only_delete_makes_key_missing(tmp_path):
    service = _service(tmp_path, ingest_mode="ephemeral")
    try:
        summary = _ingest(service)
        assert service.durable_store is None

        assert service.delete_context(summary.request_key)
        assert service.get_status(summary.request_key).status == "missing"
        assert service.search("alice", summary.request_key, "cap rate") == []
    finally:
        service.close()


def test_expired_context_reads_missing_without_durable_copy(tmp_path):
    service = _service(tmp_path, ingest_mode="ephemeral")
    try:
        summary = _ingest(service)
        service.context_store.clear()

        assert service.get_status(summary.request_key, owner_id="alice").status == "missing"
    finally:
        service.close()


def test_expired_context_drops_its_status_without_durable_copy(tmp_path, monkeypatch):
    service = _service(tmp_path, ingest_mode="ephemeral")
    try:
        summary = _ingest(service)
        assert service.status_board.status_count == 1

        monkeypatch.setattr(service.context_store, "_clock", lambda: time.monotonic() + 3600)
        assert service.context_store.clear_expired() == 1

        assert service.status_board.status_count == 0
        assert service.get_status(summary.request_key).status == "missing"
    finally:
        service.close()


def test_expired_context_keeps_status_with_durable_copy(service, monkeypatch):
    summary = _ingest(service)

    monkeypatch.setattr(service.context_store, "_clock", lambda: time.monotonic() + 3600)
    assert service.context_store.clear_expired() == 1

    assert service.status_board.status_count == 1
    assert service.get_status(summary.request_key, owner_id="alice").status == "ready"


def test_rejected_upload_reports_code(service):
    summary = service.ingest(b"%PDF-1.4 memo", DocumentMetadata(filename="memo.docx", content_type="application/msword"))

    assert not summary.success
    assert summary.error_code == "INVALID_FILE_TYPE"


def test_reupload_after_delete_reprocesses(tmp_path):
    service = _service(tmp_path, ingest_mode="ephemeral")
    try:
        first = _ingest(service)
        service.delete_context(first.request_key)

        second = _ingest(service)

        assert not second.cached
        assert service.get_status(second.request_key).status == "ready"
    finally:
        service.close()


def test_create_context_service_from_yaml(tmp_path, monkeypatch):
    monkeypatch.setattr(shared, "_config_cache", None)
    config_path = tmp_path / "master_config.yaml"
    config_path.write_text(
        f"ocr_backend: none\ncontext_sweeper: false\ndata_dir: {tmp_path / 'data'}\nrequired_parts_cap: 3\n"
    )

    service = create_context_service(str(config_path))
    try:
        assert service.required_parts_cap == 3
        assert service.durable_store.data_dir == str(tmp_path / "data")
        assert service.pipeline.extractor.ocr_engine is None
    finally:
        service.close()
