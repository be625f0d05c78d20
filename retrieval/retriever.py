"""
Retriever module - lexical BM25 ranking with domain query expansion and a never-empty fallback.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence

from rank_bm25 import BM25Plus

from ingestion.models import Chunk, ScoredChunk

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5

# Generic questions get the domain vocabulary appended.
EXPANSION_TRIGGER_RE = re.compile(r"metric|data|key|point|financial|summary", re.IGNORECASE)
EXPANSION_TERMS = "price noi cap rate irr return cash flow revenue income expense acquisition"

# Chunks mentioning any of these are candidates even without a term hit.
JARGON_RE = re.compile(
    r"asking price|purchase price|acquisition|noi|net operating income|cap rate|"
    r"capitalization rate|irr|internal rate|cash flow|pro forma|rent roll|square feet|"
    r"\bsf\b|units|occupancy|gross income|effective income|operating expense|debt service|"
    r"equity multiple|cash on cash|levered|unlevered|yield",
    re.IGNORECASE,
)

# Summary sections always rank first.
SUMMARY_HEADING_RE = re.compile(
    r"financial summary|executive summary|investment summary|key metrics",
    re.IGNORECASE,
)

# Fallback ordering when nothing matched.
FALLBACK_PRIORITY_RE = re.compile(
    r"price|noi|cap rate|return|revenue|income|expense|square feet|units",
    re.IGNORECASE,
)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
STOPWORDS = {
    "a", "about", "an", "and", "are", "as", "at", "be", "by", "can", "do", "does",
    "for", "from", "give", "how", "i", "in", "is", "it", "me", "of", "on", "or",
    "please", "show", "tell", "that", "the", "this", "to", "what", "which", "with", "you",
}


def tokenize(text: str) -> List[str]:
    """Lower-cased alphanumeric tokens without stopwords."""
    return [t for t in _TOKEN_RE.findall(text.lower()) if t not in STOPWORDS]


def expand_query(query: str) -> str:
    """Append the domain vocabulary to generic questions."""
    if EXPANSION_TRIGGER_RE.search(query):
        return f"{query} {EXPANSION_TERMS}"
    return query


class Retriever:
    """
    Ranks a candidate chunk set against a free-text query.

    Candidates are chunks sharing a term with the (expanded) query plus
    chunks matching the domain jargon pattern. Summary-heading chunks come
    first, then BM25 score, then page number. If nothing qualifies, the
    most financially relevant chunks in page order are returned instead.
    """

    def __init__(
        self,
        limit: int = DEFAULT_LIMIT,
        max_chars_per_chunk: Optional[int] = None,
    ):
        self.limit = limit
        self.max_chars_per_chunk = max_chars_per_chunk

    @classmethod
    def from_config(cls, config: dict) -> "Retriever":
        return cls(
            limit=config.get("search_limit", DEFAULT_LIMIT),
            max_chars_per_chunk=config.get("max_chars_per_chunk", 1000),
        )

    def search(self, chunks: Sequence[Chunk], query: str, limit: Optional[int] = None) -> List[Chunk]:
        """
        Return up to limit chunks, best first.

        Args:
            chunks: Candidate chunk set
            query: Free-text question
            limit: Max results (self.limit if None, at least 1)

        Returns:
            Ranked chunks; non-empty whenever chunks is non-empty
        """
        return [sc.chunk for sc in self.score(chunks, query, limit)]

    def score(self, chunks: Sequence[Chunk], query: str, limit: Optional[int] = None) -> List[ScoredChunk]:
        """Same as search() but keeps scores and the summary-priority flag."""
        if not chunks:
            return []
        k = max(1, limit if limit is not None else self.limit)

        expanded = expand_query(query)
        query_tokens = tokenize(expanded)
        corpus = [tokenize(c.content) for c in chunks]
        scores = self._bm25_scores(corpus, query_tokens)
        doc_order = self._doc_order(chunks)

        query_set = set(query_tokens)
        candidates: List[ScoredChunk] = []
        for chunk, tokens, score in zip(chunks, corpus, scores):
            hit = bool(query_set.intersection(tokens))
            if not hit and not JARGON_RE.search(chunk.content):
                continue
            candidates.append(ScoredChunk(
                chunk=chunk,
                score=score if hit else 0.0,
                priority=bool(SUMMARY_HEADING_RE.search(chunk.content)),
            ))

        if candidates:
            candidates.sort(key=lambda sc: (
                0 if sc.priority else 1,
                -sc.score,
                sc.chunk.page,
                doc_order[sc.chunk.doc_id],
                sc.chunk.index,
            ))
            results = candidates[:k]
            logger.debug(f"Query {query!r}: {len(candidates)} candidates, returning {len(results)}")
        else:
            results = self._fallback(chunks, doc_order, k)
            logger.info(f"Query {query!r}: no matches, fallback returned {len(results)} chunks")

        return [self._truncate(sc) for sc in results]

    def _bm25_scores(self, corpus: List[List[str]], query_tokens: List[str]) -> List[float]:
        if not query_tokens or not any(corpus):
            return [0.0] * len(corpus)
        # BM25Plus keeps IDF positive on tiny corpora (one or two chunks).
        bm25 = BM25Plus(corpus)
        return [float(s) for s in bm25.get_scores(query_tokens)]

    @staticmethod
    def _doc_order(chunks: Sequence[Chunk]) -> Dict[str, int]:
        order: Dict[str, int] = {}
        for c in chunks:
            order.setdefault(c.doc_id, len(order))
        return order

    def _fallback(self, chunks: Sequence[Chunk], doc_order: Dict[str, int], k: int) -> List[ScoredChunk]:
        ranked = sorted(
            chunks,
            key=lambda c: (
                0 if FALLBACK_PRIORITY_RE.search(c.content) else 1,
                c.page,
                doc_order[c.doc_id],
                c.index,
            ),
        )
        return [ScoredChunk(chunk=c, score=0.0) for c in ranked[:k]]

    def _truncate(self, scored: ScoredChunk) -> ScoredChunk:
        limit = self.max_chars_per_chunk
        if not limit or len(scored.chunk.content) <= limit:
            return scored
        chunk = scored.chunk.model_copy(update={"content": scored.chunk.content[:limit]})
        return scored.model_copy(update={"chunk": chunk})
