"""Per-conversation mutual exclusion."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class ConversationLocks:
    """Reference-counted ``asyncio.Lock`` per conversation id.

    Locks are created on first use and discarded once no task holds or
    waits on them, so idle conversations cost nothing.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        self._refs[conversation_id] = self._refs.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[conversation_id] -= 1
            if not self._refs[conversation_id]:
                del self._refs[conversation_id]
                del self._locks[conversation_id]

    def __len__(self) -> int:
        return len(self._locks)
