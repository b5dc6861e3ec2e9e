"""Best-effort real-time event fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)

CONVERSATION_STARTED = "conversation:started"
AGENT_TYPING = "agent:typing"
MESSAGE_NEW = "message:new"
AGENT_ERROR = "agent:error"
CONVERSATION_ENDED = "conversation:ended"
CONVERSATION_TRANSFERRED = "conversation:transferred"
CONVERSATION_PAUSED = "conversation:paused"

ALL_CONVERSATIONS = "*"


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None: ...


class InMemoryEventBroker:
    """Fan events out to per-conversation subscriber queues.

    Delivery is non-durable: slow subscribers whose queue is full lose the
    event, and events published with no subscribers are dropped.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscribe(self, conversation_id: str = ALL_CONVERSATIONS) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(conversation_id, []).append(queue)
        return queue

    def unsubscribe(self, conversation_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(conversation_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[conversation_id]

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, []))

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        conversation_id = str(payload.get("conversation_id") or "")
        event = {"event": topic, "data": payload}
        targets = list(self._subscribers.get(conversation_id, []))
        targets += self._subscribers.get(ALL_CONVERSATIONS, [])
        for queue in targets:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s event for conversation %s; subscriber is full",
                    topic,
                    conversation_id,
                )


class NullEventPublisher:
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        return None
