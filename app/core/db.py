"""Database helpers for async psycopg connections."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import psycopg
from pgvector.psycopg import register_vector_async
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


@asynccontextmanager
async def connect(
    dsn: str, *, vector: bool = False
) -> AsyncIterator[psycopg.AsyncConnection]:
    """Open a connection that commits on success and rolls back on error.

    Rows are returned as dictionaries. When ``vector`` is true the pgvector
    type adapters are registered so ``vector`` columns round-trip as arrays.
    """

    if not dsn:
        raise RuntimeError("DATABASE_URL is required for PostgreSQL storage")
    conn = await psycopg.AsyncConnection.connect(dsn, row_factory=dict_row)
    try:
        if vector:
            await register_vector_async(conn)
        yield conn
        await conn.commit()
    except Exception:
        try:
            await conn.rollback()
        except psycopg.Error:  # pragma: no cover - connection already broken
            logger.warning("Rollback failed on a broken connection")
        raise
    finally:
        await conn.close()


__all__ = ["connect"]
