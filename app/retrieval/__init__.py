"""Embedding, vector index and context retrieval."""

from .embeddings import EmbeddingError, EmbeddingProvider, FastEmbedProvider
from .retriever import ContextChunk, ContextRetriever, RetrievalError
from .vector_index import (
    InMemoryVectorIndex,
    IndexFilter,
    PgVectorIndex,
    SearchHit,
    VectorIndex,
    VectorPoint,
)

__all__ = [
    "ContextChunk",
    "ContextRetriever",
    "EmbeddingError",
    "EmbeddingProvider",
    "FastEmbedProvider",
    "InMemoryVectorIndex",
    "IndexFilter",
    "PgVectorIndex",
    "RetrievalError",
    "SearchHit",
    "VectorIndex",
    "VectorPoint",
]
