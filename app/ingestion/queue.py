"""At-least-once work queues (in-memory and PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID

from psycopg.types.json import Jsonb

from ..core.db import connect
from .models import WorkItem, WorkKind, WorkStatus

logger = logging.getLogger(__name__)


class WorkQueue(Protocol):
    async def enqueue(
        self,
        kind: WorkKind,
        payload: Dict[str, Any],
        *,
        max_attempts: Optional[int] = None,
    ) -> WorkItem: ...

    async def reserve(self) -> Optional[WorkItem]:
        """Lease the oldest available item, or return ``None``."""
        ...

    async def ack(self, item_id: UUID) -> None: ...

    async def nack(self, item_id: UUID, error: str, *, delay: float = 0.0) -> WorkStatus:
        """Record a failure; re-queue unless attempts are exhausted."""
        ...

    async def get(self, item_id: UUID) -> Optional[WorkItem]: ...


class InMemoryWorkQueue:
    """Process-local queue; leased items reappear after ``visibility_timeout``."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_attempts = max_attempts
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._items: Dict[UUID, WorkItem] = {}
        self._available_at: Dict[UUID, float] = {}
        self._leases: Dict[UUID, float] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        kind: WorkKind,
        payload: Dict[str, Any],
        *,
        max_attempts: Optional[int] = None,
    ) -> WorkItem:
        item = WorkItem(
            kind=WorkKind(kind),
            payload=dict(payload),
            max_attempts=max_attempts or self._max_attempts,
        )
        async with self._lock:
            self._items[item.id] = item
            self._available_at[item.id] = self._clock()
        return replace(item)

    async def reserve(self) -> Optional[WorkItem]:
        async with self._lock:
            now = self._clock()
            for item in self._items.values():
                ready = (
                    item.status is WorkStatus.QUEUED
                    and self._available_at.get(item.id, now) <= now
                )
                expired = (
                    item.status is WorkStatus.RUNNING
                    and self._leases.get(item.id, now) < now
                )
                if ready or expired:
                    item.status = WorkStatus.RUNNING
                    item.attempts += 1
                    self._leases[item.id] = now + self._visibility_timeout
                    return replace(item)
        return None

    async def ack(self, item_id: UUID) -> None:
        async with self._lock:
            item = self._items[item_id]
            item.status = WorkStatus.SUCCEEDED
            item.error = None
            self._leases.pop(item_id, None)

    async def nack(self, item_id: UUID, error: str, *, delay: float = 0.0) -> WorkStatus:
        async with self._lock:
            item = self._items[item_id]
            item.error = error
            self._leases.pop(item_id, None)
            if item.attempts >= item.max_attempts:
                item.status = WorkStatus.FAILED
            else:
                item.status = WorkStatus.QUEUED
                self._available_at[item_id] = self._clock() + delay
            return item.status

    async def get(self, item_id: UUID) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        return replace(item) if item else None

    def items(self) -> List[WorkItem]:
        return [replace(item) for item in self._items.values()]


class PostgresWorkQueue:
    """Queue backed by the ``work_items`` table.

    ``reserve`` uses ``FOR UPDATE SKIP LOCKED`` so several workers (or
    processes) can poll concurrently without handing out the same item.
    """

    def __init__(
        self, dsn: str, *, max_attempts: int = 5, visibility_timeout: float = 300.0
    ) -> None:
        self._dsn = dsn
        self._max_attempts = max_attempts
        self._visibility_timeout = visibility_timeout

    async def enqueue(
        self,
        kind: WorkKind,
        payload: Dict[str, Any],
        *,
        max_attempts: Optional[int] = None,
    ) -> WorkItem:
        item = WorkItem(
            kind=WorkKind(kind),
            payload=dict(payload),
            max_attempts=max_attempts or self._max_attempts,
        )
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO work_items (id, kind, payload, status, attempts, max_attempts)
                    VALUES (%s, %s, %s, %s, 0, %s)
                    RETURNING *
                    """,
                    (
                        item.id,
                        item.kind.value,
                        Jsonb(item.payload),
                        WorkStatus.QUEUED.value,
                        item.max_attempts,
                    ),
                )
                row = await cur.fetchone()
        return WorkItem.from_row(row)

    async def reserve(self) -> Optional[WorkItem]:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE work_items
                    SET status = 'running',
                        attempts = attempts + 1,
                        leased_until = now() + make_interval(secs => %s),
                        updated_at = now()
                    WHERE id = (
                        SELECT id FROM work_items
                        WHERE (status = 'queued' AND available_at <= now())
                           OR (status = 'running' AND leased_until < now())
                        ORDER BY created_at
                        FOR UPDATE SKIP LOCKED
                        LIMIT 1
                    )
                    RETURNING *
                    """,
                    (self._visibility_timeout,),
                )
                row = await cur.fetchone()
        return WorkItem.from_row(row) if row else None

    async def ack(self, item_id: UUID) -> None:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE work_items
                    SET status = 'succeeded', error = NULL, leased_until = NULL,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (item_id,),
                )

    async def nack(self, item_id: UUID, error: str, *, delay: float = 0.0) -> WorkStatus:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE work_items
                    SET status = CASE WHEN attempts >= max_attempts
                                      THEN 'failed' ELSE 'queued' END,
                        error = %s,
                        available_at = now() + make_interval(secs => %s),
                        leased_until = NULL,
                        updated_at = now()
                    WHERE id = %s
                    RETURNING status
                    """,
                    (error, delay, item_id),
                )
                row = await cur.fetchone()
        if not row:
            logger.warning("Attempt to nack unknown work item %s", item_id)
            raise ValueError("Work item not found")
        return WorkStatus(row["status"])

    async def get(self, item_id: UUID) -> Optional[WorkItem]:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT * FROM work_items WHERE id = %s", (item_id,))
                row = await cur.fetchone()
        return WorkItem.from_row(row) if row else None


__all__ = ["InMemoryWorkQueue", "PostgresWorkQueue", "WorkQueue"]
