"""
Retriever ranking: query expansion, jargon candidates, summary priority and the
never-empty fallback.
"""

import os
import sys

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ingestion.models import Chunk
from retrieval import Retriever, expand_query
from retrieval.retriever import EXPANSION_TERMS, tokenize


def _chunk(chunk_id: str, content: str, page: int = 1, index: int = 0, doc_id: str = "doc") -> Chunk:
    return Chunk(chunk_id=chunk_id, doc_id=doc_id, page=page, index=index, content=content)


def test_generic_question_finds_financial_chunk_over_boilerplate():
    chunks = [
        _chunk("b1", "This confidential memorandum may not be reproduced without the prior written "
                     "consent of the Sponsor.", page=1),
        _chunk("b2", "Prospective investors should conduct their own independent investigation.", page=2),
        _chunk("fin", "Net operating income of $1,202,500 and a cap rate of 6.50% support the asking price.",
               page=4),
        _chunk("b3", "All rights reserved. Distribution is restricted.", page=5),
    ]

    results = Retriever().search(chunks, "give me key data points", limit=5)

    assert results[0].chunk_id == "fin"
    assert [c.chunk_id for c in results] == ["fin"]


def test_fallback_never_returns_empty():
    chunks = [
        _chunk("p1", "Sponsor overview and history.", page=1),
        _chunk("p2", "Total revenue increased.", page=2),
        _chunk("p3", "Location highlights.", page=3),
    ]

    results = Retriever().search(chunks, "tenant mix")

    # Financial keyword first, then page order
    assert [c.chunk_id for c in results] == ["p2", "p1", "p3"]


def test_fallback_respects_limit():
    chunks = [_chunk(f"c{i}", f"Section {i} narrative.", page=i + 1) for i in range(6)]

    results = Retriever().search(chunks, "zoning", limit=2)

    assert [c.chunk_id for c in results] == ["c0", "c1"]


def test_summary_heading_ranks_first():
    chunks = [
        _chunk("body", "cap rate 6.5% cap rate noi", page=2),
        _chunk("summary", "Executive Summary of the asking price", page=1),
    ]

    scored = Retriever().score(chunks, "cap rate")

    assert [sc.chunk.chunk_id for sc in scored] == ["summary", "body"]
    assert scored[0].priority
    assert not scored[1].priority


def test_jargon_chunks_follow_text_hits():
    chunks = [
        _chunk("jargon", "Rent roll attached as exhibit B.", page=1),
        _chunk("hit", "Vacancy trend improving across the submarket.", page=3),
        _chunk("other", "Photographs of the clubhouse.", page=2),
    ]

    scored = Retriever().score(chunks, "vacancy trend")

    assert [sc.chunk.chunk_id for sc in scored] == ["hit", "jargon"]
    assert scored[0].score > 0
    assert scored[1].score == 0.0


def test_equal_scores_break_ties_by_page():
    chunks = [
        _chunk("late", "cap rate", page=3),
        _chunk("early", "cap rate", page=1),
    ]

    results = Retriever().search(chunks, "cap rate")

    assert [c.chunk_id for c in results] == ["early", "late"]


def test_limit_is_at_least_one():
    chunks = [_chunk(f"c{i}", "noi and cap rate", page=i + 1) for i in range(4)]

    assert len(Retriever().search(chunks, "noi", limit=0)) == 1
    assert len(Retriever(limit=3).search(chunks, "noi")) == 3


def test_empty_candidate_set():
    assert Retriever().search([], "noi") == []


def test_truncation_leaves_source_chunk_untouched():
    chunk = _chunk("long", "Net operating income grew strongly in the trailing twelve months.")

    results = Retriever(max_chars_per_chunk=10).search([chunk], "income")

    assert results[0].content == "Net operat"
    assert chunk.content.startswith("Net operating income")


def test_from_config():
    retriever = Retriever.from_config({"search_limit": 9, "max_chars_per_chunk": 500})
    assert retriever.limit == 9
    assert retriever.max_chars_per_chunk == 500


def test_expand_query():
    assert expand_query("key metrics") == f"key metrics {EXPANSION_TERMS}"
    assert expand_query("Financial overview?").endswith("acquisition")
    assert expand_query("tenant mix") == "tenant mix"


def test_tokenize_drops_stopwords():
    assert tokenize("What is the NOI for 2023?") == ["noi", "2023"]
