"""
Structure heuristics - line classifiers and numeric table detection.

Each classifier is a small named function so thresholds can be tuned
against pinned examples in tests/test_structure.py.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

from .models import TableCandidate, TextItem
from .parser import LINE_TOLERANCE, group_lines

logger = logging.getLogger(__name__)

HEADING_MAX_CHARS = 100
FOOTER_MAX_CHARS = 60
TABLE_LINE_MAX_CHARS = 200
TABLE_LINE_DIGIT_RATIO = 0.15

# Table detector
CELL_GAP = 6.0  # points between words that start a new cell
ALIGN_TOLERANCE = 12.0  # points between cell edges counted as aligned
MIN_TABLE_ROWS = 2
MIN_TABLE_COLUMNS = 2
MAX_COLUMN_SPREAD = 2

_LIST_RE = re.compile(r"^\s*(?:[-•*▪◦·]|\d{1,3}[.)]|\([a-zA-Z0-9]{1,3}\))\s+\S")
_NUMBERED_SECTION_RE = re.compile(r"^(?:\d+(?:\.\d+)*\.?|[IVX]+\.)\s+\S")
_TITLE_WORD_RE = re.compile(r"^[A-Z][\w'’&().,/-]*$")
_MINOR_WORDS = {"a", "an", "and", "as", "at", "by", "for", "in", "of", "on", "or", "the", "to", "vs", "&", "-", "–"}
_CELL_SPLIT_RE = re.compile(r"\t+|\s{3,}")


def digit_ratio(text: str) -> float:
    """Fraction of characters in text that are digits (0 for empty text)."""
    if not text:
        return 0.0
    return sum(1 for c in text if c.isdigit()) / len(text)


def line_digit_ratio(line: str) -> float:
    """Digit ratio of a line ignoring whitespace."""
    return digit_ratio(re.sub(r"\s+", "", line))


def split_cells(line: str) -> List[str]:
    """Split a whitespace-aligned line into cells."""
    return [c for c in _CELL_SPLIT_RE.split(line.strip()) if c]


def _is_title_case(text: str) -> bool:
    words = text.rstrip(":").split()
    if not words:
        return False
    if not _TITLE_WORD_RE.match(words[0]):
        return False
    return all(w.lower() in _MINOR_WORDS or _TITLE_WORD_RE.match(w) for w in words[1:])


def is_heading_line(line: str) -> bool:
    """
    Short line that reads like a heading.

    Matches ALL CAPS text, Title Case text, numbered sections
    ("2.1 Market Overview") and short labels ending in a colon.
    Sentences (terminal period) and number-heavy lines never match.
    """
    s = line.strip()
    if not s or len(s) >= HEADING_MAX_CHARS:
        return False
    if s.endswith(".") and not _NUMBERED_SECTION_RE.match(s):
        return False
    if line_digit_ratio(s) >= 0.5:
        return False

    letters = [c for c in s if c.isalpha()]
    if len(letters) >= 2 and all(c.isupper() for c in letters):
        return True
    if s.endswith(":") and len(s) <= FOOTER_MAX_CHARS:
        return True
    if _NUMBERED_SECTION_RE.match(s):
        rest = s.split(None, 1)[1]
        return _is_title_case(rest)
    return _is_title_case(s)


def is_list_item(line: str) -> bool:
    """Bullet ("- ", "• ", "* ") or enumerated ("1. ", "2) ", "(a) ") line."""
    return bool(_LIST_RE.match(line))


def is_aligned_line(line: str) -> bool:
    """Line with at least two whitespace-separated columns."""
    return len(split_cells(line)) >= 2


def is_table_line(line: str) -> bool:
    """Short, number-heavy line laid out in aligned columns."""
    s = line.strip()
    if not s or len(s) > TABLE_LINE_MAX_CHARS:
        return False
    return is_aligned_line(s) and line_digit_ratio(s) >= TABLE_LINE_DIGIT_RATIO


def is_footer_line(line: str) -> bool:
    """Short line such as a page number, running title or confidentiality notice."""
    s = line.strip()
    return 0 < len(s) <= FOOTER_MAX_CHARS


# =============================================================================
# Table Detection
# =============================================================================

class _Cell:
    __slots__ = ("words", "x0", "x1", "top", "bottom")

    def __init__(self, item: TextItem):
        self.words = [item.text]
        self.x0 = item.x0
        self.x1 = item.x1
        self.top = item.top
        self.bottom = item.bottom

    def add(self, item: TextItem) -> None:
        self.words.append(item.text)
        self.x1 = max(self.x1, item.x1)
        self.top = min(self.top, item.top)
        self.bottom = max(self.bottom, item.bottom)

    @property
    def text(self) -> str:
        return " ".join(self.words)


class TableDetector:
    """
    Find numeric tables from word positions.

    Words are grouped into rows (vertical tolerance), rows into cells
    (horizontal gap), and runs of multi-cell rows are accepted when their
    columns line up.
    """

    def __init__(
        self,
        row_tolerance: float = LINE_TOLERANCE,
        cell_gap: float = CELL_GAP,
        align_tolerance: float = ALIGN_TOLERANCE,
    ):
        self.row_tolerance = row_tolerance
        self.cell_gap = cell_gap
        self.align_tolerance = align_tolerance

    def detect(self, items: List[TextItem], page: int, doc_id: Optional[str] = None) -> List[TableCandidate]:
        """
        Detect table candidates on one page.

        Args:
            items: Positioned words of the page
            page: 1-based page number
            doc_id: Owning document (stamped on each candidate)

        Returns:
            Table candidates in top-to-bottom order
        """
        rows = [self._cells(line) for line in group_lines(items, self.row_tolerance)]

        tables: List[TableCandidate] = []
        run: List[List[_Cell]] = []
        for cells in rows + [[]]:
            if len(cells) >= MIN_TABLE_COLUMNS:
                run.append(cells)
                continue
            if run:
                table = self._accept(run, page, doc_id)
                if table is not None:
                    tables.append(table)
                run = []

        if tables:
            logger.debug(f"Page {page}: detected {len(tables)} table(s)")
        return tables

    def _cells(self, line: List[TextItem]) -> List[_Cell]:
        cells: List[_Cell] = []
        for item in line:
            if cells and item.x0 - cells[-1].x1 <= self.cell_gap:
                cells[-1].add(item)
            else:
                cells.append(_Cell(item))
        return cells

    def _accept(self, run: List[List[_Cell]], page: int, doc_id: Optional[str]) -> Optional[TableCandidate]:
        if len(run) < MIN_TABLE_ROWS:
            return None

        counts = [len(r) for r in run]
        if min(counts) < MIN_TABLE_COLUMNS or max(counts) - min(counts) > MAX_COLUMN_SPREAD:
            return None

        if self._aligned_columns(run) < MIN_TABLE_COLUMNS:
            return None

        texts = [[c.text for c in r] for r in run]
        if not any(any(ch.isdigit() for ch in cell) for row in texts for cell in row):
            return None

        header: Optional[List[str]] = None
        body = texts
        first_has_digits = any(ch.isdigit() for cell in texts[0] for ch in cell)
        rest_has_digits = any(ch.isdigit() for row in texts[1:] for cell in row for ch in cell)
        if not first_has_digits and rest_has_digits:
            header, body = texts[0], texts[1:]

        all_cells = [c for r in run for c in r]
        bbox = (
            min(c.x0 for c in all_cells),
            min(c.top for c in all_cells),
            max(c.x1 for c in all_cells),
            max(c.bottom for c in all_cells),
        )
        return TableCandidate(doc_id=doc_id, page=page, bbox=bbox, header=header, rows=body)

    def _aligned_columns(self, run: List[List[_Cell]]) -> int:
        """Count cells of the widest row whose left or right edge recurs in most other rows."""
        anchor = max(run, key=len)
        others = [r for r in run if r is not anchor]
        needed = max(1, (len(others) + 1) // 2)

        aligned = 0
        for cell in anchor:
            hits = sum(
                1 for row in others
                if any(
                    abs(c.x0 - cell.x0) <= self.align_tolerance
                    or abs(c.x1 - cell.x1) <= self.align_tolerance
                    for c in row
                )
            )
            if hits >= needed:
                aligned += 1
        return aligned
