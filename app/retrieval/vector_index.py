"""Agent-partitioned vector indexes (in-memory and pgvector)."""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np
from psycopg.types.json import Jsonb

from ..core.db import connect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexFilter:
    """Restrict index operations to one agent's partition.

    ``agent_id`` is mandatory; ``document_id`` and ``metadata`` narrow the
    selection further (metadata is matched by key/value containment).
    """

    agent_id: str
    document_id: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.agent_id is None or not str(self.agent_id).strip():
            raise ValueError("agent_id is required for vector index operations")

    def matches(self, point: "VectorPoint") -> bool:
        if point.agent_id != self.agent_id:
            return False
        if self.document_id is not None and point.document_id != self.document_id:
            return False
        return all(point.metadata.get(k) == v for k, v in self.metadata.items())


@dataclass(frozen=True)
class VectorPoint:
    id: str
    agent_id: str
    document_id: str
    vector: Sequence[float]
    text: str
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchHit:
    id: str
    agent_id: str
    document_id: str
    text: str
    score: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    async def upsert(self, points: Sequence[VectorPoint]) -> int: ...

    async def search(
        self, vector: Sequence[float], k: int, flt: IndexFilter
    ) -> List[SearchHit]: ...

    async def delete(self, flt: IndexFilter) -> int: ...

    async def count(self, flt: IndexFilter) -> int: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex:
    """Process-local index used for development and tests."""

    def __init__(self) -> None:
        self._points: Dict[str, tuple[int, VectorPoint]] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def upsert(self, points: Sequence[VectorPoint]) -> int:
        async with self._lock:
            for point in points:
                existing = self._points.get(point.id)
                seq = existing[0] if existing else next(self._seq)
                self._points[point.id] = (seq, point)
        return len(points)

    async def search(
        self, vector: Sequence[float], k: int, flt: IndexFilter
    ) -> List[SearchHit]:
        if k <= 0:
            return []
        scored = [
            (cosine_similarity(vector, point.vector), point.document_id, seq, point)
            for seq, point in self._points.values()
            if flt.matches(point)
        ]
        scored.sort(key=lambda item: (-item[0], item[1], item[2]))
        return [
            SearchHit(
                id=point.id,
                agent_id=point.agent_id,
                document_id=point.document_id,
                text=point.text,
                score=score,
                metadata=dict(point.metadata),
            )
            for score, _, _, point in scored[:k]
        ]

    async def delete(self, flt: IndexFilter) -> int:
        async with self._lock:
            doomed = [pid for pid, (_, point) in self._points.items() if flt.matches(point)]
            for pid in doomed:
                del self._points[pid]
        return len(doomed)

    async def count(self, flt: IndexFilter) -> int:
        return sum(1 for _, point in self._points.values() if flt.matches(point))


class PgVectorIndex:
    """pgvector-backed index over the ``knowledge_chunks`` table.

    Similarity is cosine: ``score = 1 - (embedding <=> query)``. Ties are
    broken by document id, then by insertion sequence.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @staticmethod
    def _where(flt: IndexFilter) -> tuple[str, list[Any]]:
        clauses = ["agent_id = %s"]
        params: list[Any] = [flt.agent_id]
        if flt.document_id is not None:
            clauses.append("document_id = %s")
            params.append(flt.document_id)
        if flt.metadata:
            clauses.append("metadata @> %s")
            params.append(Jsonb(dict(flt.metadata)))
        return " AND ".join(clauses), params

    async def upsert(self, points: Sequence[VectorPoint]) -> int:
        if not points:
            return 0
        async with connect(self._dsn, vector=True) as conn:
            async with conn.cursor() as cur:
                await cur.executemany(
                    """
                    INSERT INTO knowledge_chunks
                        (id, agent_id, document_id, content, metadata, embedding)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        agent_id = EXCLUDED.agent_id,
                        document_id = EXCLUDED.document_id,
                        content = EXCLUDED.content,
                        metadata = EXCLUDED.metadata,
                        embedding = EXCLUDED.embedding
                    """,
                    [
                        (
                            p.id,
                            p.agent_id,
                            p.document_id,
                            p.text,
                            Jsonb(dict(p.metadata)),
                            np.asarray(p.vector, dtype=np.float32),
                        )
                        for p in points
                    ],
                )
        return len(points)

    async def search(
        self, vector: Sequence[float], k: int, flt: IndexFilter
    ) -> List[SearchHit]:
        if k <= 0:
            return []
        where, params = self._where(flt)
        query = np.asarray(vector, dtype=np.float32)
        async with connect(self._dsn, vector=True) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"""
                    SELECT id, agent_id, document_id, content, metadata,
                           1 - (embedding <=> %s) AS score
                    FROM knowledge_chunks
                    WHERE {where}
                    ORDER BY embedding <=> %s, document_id, seq
                    LIMIT %s
                    """,
                    [query, *params, query, k],
                )
                rows = await cur.fetchall()
        return [
            SearchHit(
                id=row["id"],
                agent_id=row["agent_id"],
                document_id=row["document_id"],
                text=row["content"],
                score=float(row["score"]),
                metadata=row["metadata"] or {},
            )
            for row in rows
        ]

    async def delete(self, flt: IndexFilter) -> int:
        where, params = self._where(flt)
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(f"DELETE FROM knowledge_chunks WHERE {where}", params)
                return cur.rowcount

    async def count(self, flt: IndexFilter) -> int:
        where, params = self._where(flt)
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    f"SELECT count(*) AS total FROM knowledge_chunks WHERE {where}", params
                )
                row = await cur.fetchone()
        return int(row["total"]) if row else 0


__all__ = [
    "InMemoryVectorIndex",
    "IndexFilter",
    "PgVectorIndex",
    "SearchHit",
    "VectorIndex",
    "VectorPoint",
    "cosine_similarity",
]
