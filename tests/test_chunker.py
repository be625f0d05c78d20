"""
Chunker tests: structural types, token budget, ids and lossless splitting.
"""

import os
import sys

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ingestion.chunker import Chunker, count_tokens_approx, make_token_counter

PAGE_TEXT = "\n".join([
    "EXECUTIVE SUMMARY",
    "",
    "The Property is a 140-unit multifamily asset. It was built in 1998 and renovated in 2019.",
    "",
    "- Strong occupancy",
    "- Value-add upside",
    "",
    "Unit Type    Units    Rent",
    "1 Bed    48    $1,245",
    "2 Bed    76    $1,480",
    "",
    "Page 3 of 12",
])

SENTENCE = "Rental income grew by four percent year over year as renovated units leased quickly. "


def _squash(text: str) -> str:
    return "".join(text.split())


def test_structural_types_in_reading_order():
    chunks = Chunker().chunk_page("doc", 3, PAGE_TEXT)

    assert [c.type for c in chunks] == ["header", "paragraph", "list", "table", "footer"]
    assert chunks[0].content == "EXECUTIVE SUMMARY"
    assert chunks[3].content.startswith("Unit Type")
    assert chunks[4].content == "Page 3 of 12"


def test_ids_and_line_ranges():
    chunks = Chunker().chunk_page("doc", 3, PAGE_TEXT)

    assert [c.chunk_id for c in chunks] == [f"doc_p3_c{i}" for i in range(len(chunks))]
    assert [c.index for c in chunks] == list(range(len(chunks)))
    assert all(c.page == 3 and c.doc_id == "doc" for c in chunks)

    ranges = [(c.start_line, c.end_line) for c in chunks]
    assert ranges == [(0, 0), (2, 2), (4, 5), (7, 9), (11, 11)]


def test_chunks_reproduce_page_text():
    chunks = Chunker().chunk_page("doc", 1, PAGE_TEXT)
    assert _squash("".join(c.content for c in chunks)) == _squash(PAGE_TEXT)


def test_preserve_structure_off_yields_paragraphs():
    chunks = Chunker(preserve_structure=False).chunk_page("doc", 1, PAGE_TEXT)

    assert chunks
    assert {c.type for c in chunks} == {"paragraph"}
    assert _squash("".join(c.content for c in chunks)) == _squash(PAGE_TEXT)


def test_small_same_type_blocks_are_packed():
    text = "First paragraph sentence one.\n\nSecond paragraph sentence two.\n\nThird paragraph."
    chunks = Chunker(preserve_structure=False).chunk_page("doc", 1, text)

    assert len(chunks) == 1
    assert chunks[0].content == text
    assert (chunks[0].start_line, chunks[0].end_line) == (0, 4)


def test_long_text_respects_budget():
    text = "\n\n".join(SENTENCE * 8 for _ in range(12))
    chunker = Chunker(chunk_size_tokens=50)

    chunks = chunker.chunk_page("doc", 1, text)

    assert len(chunks) > 1
    for chunk in chunks:
        assert chunk.tokens <= 50
        assert count_tokens_approx(chunk.content) <= 50
    assert _squash("".join(c.content for c in chunks)) == _squash(text)


def test_unbreakable_token_is_split_by_characters():
    token = "x" * 1000
    chunks = Chunker(chunk_size_tokens=16).chunk_page("doc", 1, f"Intro line here.\n\n{token}")

    assert all(c.tokens <= 16 for c in chunks)
    assert _squash("".join(c.content for c in chunks)) == _squash(f"Intro line here.{token}")


def test_oversized_table_splits_on_rows():
    rows = [f"Unit {n}    {n * 10}    ${n * 100:,}" for n in range(101, 161)]
    text = "\n".join(rows)
    chunks = Chunker(chunk_size_tokens=40).chunk_page("doc", 1, text)

    assert len(chunks) > 1
    assert all(c.type == "table" for c in chunks)
    # No row is cut in half
    for chunk in chunks:
        for line in chunk.content.split("\n"):
            assert line in rows


def test_empty_page_has_no_chunks():
    assert Chunker().chunk_page("doc", 1, "") == []
    assert Chunker().chunk_page("doc", 1, "   \n\n  ") == []


def test_single_group_heading_is_header_not_footer():
    chunks = Chunker().chunk_page("doc", 1, "Rent Roll")
    assert [c.type for c in chunks] == ["header"]


def test_table_in_last_group_is_not_footer():
    text = "Intro paragraph for the page.\n\nNOI    1,202,500\nCap    6.50%"
    chunks = Chunker().chunk_page("doc", 1, text)
    assert chunks[-1].type == "table"


def test_budget_below_minimum_rejected():
    with pytest.raises(ValueError):
        Chunker(chunk_size_tokens=8)


def test_token_counters():
    assert count_tokens_approx("") == 0
    assert count_tokens_approx("abcd") == 1
    assert count_tokens_approx("abcde") == 2
    assert make_token_counter("chars") is count_tokens_approx
    with pytest.raises(ValueError):
        make_token_counter("words")


def test_from_config():
    chunker = Chunker.from_config({"chunk_size_tokens": 120, "preserve_structure": False})
    assert chunker.chunk_size_tokens == 120
    assert not chunker.preserve_structure
