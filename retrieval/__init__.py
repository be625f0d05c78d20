"""Retrieval Module - lexical ranking over document chunks."""

from .retriever import Retriever, expand_query

__all__ = ["Retriever", "expand_query"]
