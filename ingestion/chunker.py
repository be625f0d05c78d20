"""
Chunking module - splits page text into typed, token-bounded chunks.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import tiktoken

from .models import Chunk
from .structure import (
    is_aligned_line,
    is_footer_line,
    is_heading_line,
    is_list_item,
    is_table_line,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE_TOKENS = 800
MIN_CHUNK_SIZE_TOKENS = 16
MAX_HEADER_LINES = 2
MAX_FOOTER_LINES = 2

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?;])\s+")


def count_tokens_approx(text: str) -> int:
    """Approximate token count (one token per four characters)."""
    return math.ceil(len(text) / 4)


def make_token_counter(estimator: str = "chars", encoding_name: str = "cl100k_base") -> Callable[[str], int]:
    """
    Build a token counting function.

    Args:
        estimator: "chars" (len/4 heuristic) or "tiktoken"
        encoding_name: tiktoken encoding used when estimator is "tiktoken"

    Returns:
        Callable mapping text to a token estimate
    """
    if estimator == "chars":
        return count_tokens_approx
    if estimator == "tiktoken":
        encoding = tiktoken.get_encoding(encoding_name)
        return lambda text: len(encoding.encode(text, disallowed_special=()))
    raise ValueError(f"Unknown token_estimator: {estimator}")


@dataclass
class Block:
    """Contiguous lines of one structural type."""

    type: str
    lines: List[Tuple[int, str]]  # (line offset, text)

    @property
    def start_line(self) -> int:
        return self.lines[0][0]

    @property
    def end_line(self) -> int:
        return self.lines[-1][0]

    @property
    def text(self) -> str:
        return "\n".join(t for _, t in self.lines)


# (text, start_line, end_line)
Piece = Tuple[str, int, int]


class Chunker:
    """
    Convert page text into chunks.
    - Blocks are classified as header, footer, table, list or paragraph
    - Adjacent blocks of the same type are packed up to the token budget
    - Oversized blocks split by lines, sentences, words, then characters
    """

    def __init__(
        self,
        chunk_size_tokens: int = DEFAULT_CHUNK_SIZE_TOKENS,
        preserve_structure: bool = True,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        if chunk_size_tokens < MIN_CHUNK_SIZE_TOKENS:
            raise ValueError(f"chunk_size_tokens must be >= {MIN_CHUNK_SIZE_TOKENS}")
        self.chunk_size_tokens = chunk_size_tokens
        self.preserve_structure = preserve_structure
        self.count_tokens = token_counter or count_tokens_approx

    @classmethod
    def from_config(cls, config: dict) -> "Chunker":
        return cls(
            chunk_size_tokens=config.get("chunk_size_tokens", DEFAULT_CHUNK_SIZE_TOKENS),
            preserve_structure=config.get("preserve_structure", True),
            token_counter=make_token_counter(config.get("token_estimator", "chars")),
        )

    def chunk_page(self, doc_id: str, page: int, text: str) -> List[Chunk]:
        """
        Split one page of text into chunks.

        Args:
            doc_id: Document identifier
            page: 1-based page number
            text: Final page text

        Returns:
            Chunks in reading order with ids {doc_id}_p{page}_c{index}
        """
        if not text.strip():
            return []

        groups = self._split_groups(text)
        if self.preserve_structure:
            blocks = self._classify(groups)
        else:
            blocks = [Block("paragraph", g) for g in groups]

        chunks: List[Chunk] = []
        for block_type, pieces in self._pack_blocks(blocks):
            for content, start, end in pieces:
                content = content.strip()
                if not content:
                    continue
                idx = len(chunks)
                chunks.append(Chunk(
                    chunk_id=f"{doc_id}_p{page}_c{idx}",
                    doc_id=doc_id,
                    page=page,
                    index=idx,
                    start_line=start,
                    end_line=end,
                    tokens=self.count_tokens(content),
                    type=block_type,
                    content=content,
                ))

        logger.debug(f"Page {page}: {len(chunks)} chunks")
        return chunks

    # -------------------------------------------------------------------------
    # Block classification
    # -------------------------------------------------------------------------

    def _split_groups(self, text: str) -> List[List[Tuple[int, str]]]:
        """Split text into runs of non-blank lines separated by blank lines."""
        groups: List[List[Tuple[int, str]]] = []
        current: List[Tuple[int, str]] = []
        for offset, line in enumerate(text.split("\n")):
            if line.strip():
                current.append((offset, line.rstrip()))
            elif current:
                groups.append(current)
                current = []
        if current:
            groups.append(current)
        return groups

    def _line_kinds(self, group: List[Tuple[int, str]]) -> List[str]:
        kinds = []
        for _, line in group:
            if is_table_line(line):
                kinds.append("table")
            elif is_list_item(line):
                kinds.append("list")
            elif kinds and kinds[-1] == "list" and line[:1].isspace():
                kinds.append("list")  # wrapped bullet continuation
            else:
                kinds.append("paragraph")

        # An aligned text row directly above a table row is its header row.
        for i in range(len(kinds) - 1):
            if kinds[i] == "paragraph" and kinds[i + 1] == "table" and is_aligned_line(group[i][1]):
                kinds[i] = "table"

        # Tables need at least two rows.
        i = 0
        while i < len(kinds):
            j = i
            while j < len(kinds) and kinds[j] == kinds[i]:
                j += 1
            if kinds[i] == "table" and j - i < 2:
                for k in range(i, j):
                    kinds[k] = "paragraph"
            i = j
        return kinds

    def _classify(self, groups: List[List[Tuple[int, str]]]) -> List[Block]:
        blocks: List[Block] = []
        for gi, group in enumerate(groups):
            kinds = self._line_kinds(group)
            runs: List[Block] = []
            for kind, line in zip(kinds, group):
                if runs and runs[-1].type == kind:
                    runs[-1].lines.append(line)
                else:
                    runs.append(Block(kind, [line]))

            if gi == 0:
                runs = self._peel_header(runs)
            if gi == len(groups) - 1 and gi > 0:
                runs = self._mark_footer(runs)
            blocks.extend(runs)
        return blocks

    def _peel_header(self, runs: List[Block]) -> List[Block]:
        """Leading heading lines of the page become a header block."""
        first = runs[0]
        if first.type != "paragraph":
            return runs
        n = 0
        while n < min(MAX_HEADER_LINES, len(first.lines)) and is_heading_line(first.lines[n][1]):
            n += 1
        if n == 0:
            return runs
        header = Block("header", first.lines[:n])
        rest = first.lines[n:]
        return [header] + ([Block("paragraph", rest)] if rest else []) + runs[1:]

    def _mark_footer(self, runs: List[Block]) -> List[Block]:
        """A short trailing group of the page is a footer."""
        if any(run.type == "table" for run in runs):
            return runs
        lines = [line for run in runs for line in run.lines]
        if len(lines) <= MAX_FOOTER_LINES and all(is_footer_line(t) for _, t in lines):
            return [Block("footer", lines)]
        return runs

    # -------------------------------------------------------------------------
    # Packing and splitting
    # -------------------------------------------------------------------------

    def _fits(self, text: str) -> bool:
        return self.count_tokens(text) <= self.chunk_size_tokens

    def _pack_blocks(self, blocks: List[Block]) -> List[Tuple[str, List[Piece]]]:
        """Pack adjacent same-type blocks; headers and footers stay alone."""
        packed: List[Tuple[str, List[Piece]]] = []
        pending: List[Piece] = []
        pending_type: Optional[str] = None

        def flush() -> None:
            nonlocal pending, pending_type
            if pending:
                packed.append((pending_type, self._pack(pending, "\n\n")))
            pending, pending_type = [], None

        for block in blocks:
            pieces = self._fit_block(block)
            if block.type in ("header", "footer"):
                flush()
                packed.append((block.type, pieces))
                continue
            if block.type != pending_type:
                flush()
                pending_type = block.type
            pending.extend(pieces)
        flush()
        return packed

    def _fit_block(self, block: Block) -> List[Piece]:
        text = block.text
        if self._fits(text):
            return [(text, block.start_line, block.end_line)]

        units: List[Piece] = []
        for offset, line in block.lines:
            units.extend((part, offset, offset) for part in self._split_oversized(line))
        return self._pack(units, "\n")

    def _split_oversized(self, text: str) -> List[str]:
        """Split text that exceeds the budget by sentences, then words, then characters."""
        if self._fits(text):
            return [text]

        sentences = [s for s in _SENTENCE_SPLIT_RE.split(text) if s]
        if len(sentences) > 1:
            parts = sentences
        else:
            parts = text.split()
            if len(parts) <= 1:
                return self._split_chars(text.strip())

        units: List[Piece] = []
        for part in parts:
            units.extend((p, 0, 0) for p in self._split_oversized(part))
        return [t for t, _, _ in self._pack(units, " ")]

    def _split_chars(self, text: str) -> List[str]:
        """Cut an unbreakable token into the longest prefixes that fit."""
        out: List[str] = []
        while text:
            lo, hi = 1, len(text)
            while lo < hi:
                mid = (lo + hi + 1) // 2
                if self._fits(text[:mid]):
                    lo = mid
                else:
                    hi = mid - 1
            out.append(text[:lo])
            text = text[lo:]
        return out

    def _pack(self, units: List[Piece], sep: str) -> List[Piece]:
        """Greedily join units while the joined text stays within budget."""
        out: List[Piece] = []
        current: List[Piece] = []
        for unit in units:
            if current:
                candidate = sep.join(t for t, _, _ in current) + sep + unit[0]
                if self._fits(candidate):
                    current.append(unit)
                    continue
                out.append(self._merge(current, sep))
            current = [unit]
        if current:
            out.append(self._merge(current, sep))
        return out

    @staticmethod
    def _merge(pieces: List[Piece], sep: str) -> Piece:
        return (
            sep.join(t for t, _, _ in pieces),
            min(s for _, s, _ in pieces),
            max(e for _, _, e in pieces),
        )
