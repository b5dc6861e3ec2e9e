"""Agent-scoped context retrieval for prompt grounding."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from .embeddings import EmbeddingProvider
from .vector_index import IndexFilter, VectorIndex

logger = logging.getLogger(__name__)


class RetrievalError(RuntimeError):
    """Embedding or index lookup failed; callers may retry or continue."""

    retryable = True


@dataclass(frozen=True)
class ContextChunk:
    text: str
    document_id: str
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


class ContextRetriever:
    """Embed the query and return the top-k chunks for one agent."""

    def __init__(
        self, embedder: EmbeddingProvider, index: VectorIndex, default_k: int = 5
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._default_k = default_k

    async def retrieve(
        self,
        agent_id: str,
        query_text: str,
        k: Optional[int] = None,
        *,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[ContextChunk]:
        limit = self._default_k if k is None else k
        flt = IndexFilter(agent_id=agent_id, metadata=dict(filters or {}))
        if limit <= 0 or not (query_text or "").strip():
            return []

        try:
            vector = await self._embedder.embed(query_text)
        except Exception as exc:
            raise RetrievalError(f"Query embedding failed: {exc}") from exc
        try:
            hits = await self._index.search(vector, limit, flt)
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc

        chunks: List[ContextChunk] = []
        for hit in hits:
            if hit.agent_id != agent_id:
                logger.warning(
                    "Dropping hit %s from agent %s while retrieving for %s",
                    hit.id,
                    hit.agent_id,
                    agent_id,
                )
                continue
            metadata = dict(hit.metadata)
            metadata.setdefault("point_id", hit.id)
            chunks.append(
                ContextChunk(
                    text=hit.text,
                    document_id=hit.document_id,
                    score=hit.score,
                    metadata=metadata,
                )
            )
        # Stable sort keeps the index's insertion-order tie break.
        chunks.sort(key=lambda chunk: (-chunk.score, chunk.document_id))
        return chunks[:limit]


__all__ = ["ContextChunk", "ContextRetriever", "RetrievalError"]
