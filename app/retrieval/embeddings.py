"""Sentence embedding providers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


class EmbeddingError(RuntimeError):
    """Raised when an embedding could not be produced."""


class EmbeddingProvider(Protocol):
    """Produce fixed-dimension vectors for text."""

    dimension: int

    async def embed(self, text: str) -> List[float]: ...

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]: ...


class FastEmbedProvider:
    """Multilingual sentence embeddings through ``fastembed``.

    The ONNX model is loaded on first use and inference runs in a worker
    thread so the event loop is never blocked.
    """

    def __init__(
        self, model_name: str = DEFAULT_EMBEDDING_MODEL, dimension: int = 384
    ) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        with self._lock:
            if self._model is None:
                from fastembed import TextEmbedding

                logger.info("Loading embedding model %s", self.model_name)
                self._model = TextEmbedding(model_name=self.model_name)
            return self._model

    def _embed_sync(self, texts: Sequence[str]) -> List[List[float]]:
        model = self._get_model()
        vectors = [[float(x) for x in vec] for vec in model.embed(list(texts))]
        for vec in vectors:
            if len(vec) != self.dimension:
                raise EmbeddingError(
                    f"Embedding dimension {len(vec)} does not match {self.dimension}"
                )
        return vectors

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            return await asyncio.to_thread(self._embed_sync, texts)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_many([text])
        return vectors[0]


__all__ = [
    "DEFAULT_EMBEDDING_MODEL",
    "EmbeddingError",
    "EmbeddingProvider",
    "FastEmbedProvider",
]
