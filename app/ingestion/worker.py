"""Bounded asyncio worker pool and background work handlers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, List
from uuid import NAMESPACE_URL, uuid5

from ..nlp import TextAnalyzer
from ..retrieval import EmbeddingProvider, IndexFilter, VectorIndex, VectorPoint
from .chunking import chunk_text
from .models import DocumentPayload, MessagePayload, WorkItem, WorkKind, WorkStatus
from .queue import WorkQueue

if TYPE_CHECKING:  # pragma: no cover
    from ..conversations.service import ConversationService
    from ..core.bootstrap import AgentDirectory

logger = logging.getLogger(__name__)

Handler = Callable[[WorkItem], Awaitable[None]]


def chunk_point_id(agent_id: str, document_id: str, index: int) -> str:
    """Deterministic point id so re-ingesting a document overwrites it."""

    return str(uuid5(NAMESPACE_URL, f"agent:{agent_id}/document:{document_id}/chunk:{index}"))


class DocumentIngestionHandler:
    """Analyse, chunk, embed and index one document for an agent."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        index: VectorIndex,
        analyzer: TextAnalyzer | None = None,
        *,
        max_chars: int = 1000,
        overlap: int = 100,
    ) -> None:
        self._embedder = embedder
        self._index = index
        self._analyzer = analyzer or TextAnalyzer()
        self._max_chars = max_chars
        self._overlap = overlap

    async def __call__(self, item: WorkItem) -> None:
        payload = DocumentPayload(**item.payload)
        analysis = self._analyzer.analyze(payload.content)
        # Hebrew text is chunked before normalisation so paragraph breaks survive.
        chunks = chunk_text(payload.content, max_chars=self._max_chars, overlap=self._overlap)
        if analysis.is_hebrew:
            chunks = [self._analyzer.analyze(chunk).normalized_text for chunk in chunks]
        vectors = await self._embedder.embed_many(chunks) if chunks else []

        flt = IndexFilter(agent_id=payload.agent_id, document_id=payload.document_id)
        removed = await self._index.delete(flt)
        points = [
            VectorPoint(
                id=chunk_point_id(payload.agent_id, payload.document_id, i),
                agent_id=payload.agent_id,
                document_id=payload.document_id,
                vector=vector,
                text=chunk,
                metadata={
                    **payload.metadata,
                    "chunk_index": i,
                    "total_chunks": len(chunks),
                    "language": analysis.language,
                    "is_hebrew": analysis.is_hebrew,
                },
            )
            for i, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        await self._index.upsert(points)
        logger.info(
            "Indexed document %s (%d chunks, %d replaced)",
            payload.document_id,
            len(points),
            removed,
            extra={"agent_id": payload.agent_id, "work_id": str(item.id)},
        )


class ConversationAnalysisHandler:
    """Store sentiment/entity insights on a conversation's metadata."""

    def __init__(self, service: "ConversationService") -> None:
        self._service = service

    async def __call__(self, item: WorkItem) -> None:
        conversation_id = item.payload["conversation_id"]
        insights = await self._service.analyze_conversation(conversation_id, annotate=True)
        logger.info(
            "Analysed conversation (%s sentiment)",
            insights.overall_sentiment,
            extra={"conversation_id": conversation_id, "work_id": str(item.id)},
        )


class MessageProcessingHandler:
    """Answer a queued user message through the regular turn pipeline.

    The agent configuration is looked up from the conversation's agent, so a
    queued message is answered exactly as a synchronous request would be.
    """

    def __init__(self, service: "ConversationService", agents: "AgentDirectory") -> None:
        self._service = service
        self._agents = agents

    async def __call__(self, item: WorkItem) -> None:
        payload = MessagePayload.from_dict(item.payload)
        conversation = await self._service.require_conversation(payload.conversation_id)
        result = await self._service.process_turn(
            payload.conversation_id,
            self._agents.get(conversation.agent_id),
            payload.content,
            {**payload.metadata, "processed_by_worker": True},
        )
        logger.info(
            "Processed queued message (%d characters)",
            len(result.content),
            extra={"conversation_id": payload.conversation_id, "work_id": str(item.id)},
        )


class WorkerPool:
    """Run up to ``concurrency`` handlers at once against a :class:`WorkQueue`.

    Failed items are nacked with a linear back-off and retried until the
    queue marks them failed.
    """

    def __init__(
        self,
        queue: WorkQueue,
        handlers: Mapping[WorkKind, Handler],
        *,
        concurrency: int = 4,
        poll_interval: float = 0.5,
        retry_delay: float = 1.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._handlers = dict(handlers)
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._retry_delay = retry_delay
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def run_once(self) -> bool:
        """Process one item; return ``False`` when nothing was available."""

        item = await self._queue.reserve()
        if item is None:
            return False
        handler = self._handlers.get(item.kind)
        if handler is None:
            logger.error("No handler registered for %s", item.kind.value)
            await self._queue.nack(item.id, f"no handler for {item.kind.value}")
            return True
        try:
            await handler(item)
        except Exception as exc:
            logger.exception(
                "Work item %s (%s) failed on attempt %d",
                item.id,
                item.kind.value,
                item.attempts,
            )
            status = await self._queue.nack(
                item.id, str(exc), delay=self._retry_delay * item.attempts
            )
            if status is WorkStatus.FAILED:
                logger.error("Work item %s exhausted its attempts", item.id)
        else:
            await self._queue.ack(item.id)
        return True

    async def _worker(self, number: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception("Worker %d failed to poll the queue", number)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), self._poll_interval)
                except asyncio.TimeoutError:
                    pass

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"work-{n}")
            for n in range(self._concurrency)
        ]

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def run_until_empty(self) -> None:
        """Drain everything currently available, then return."""

        async def drain() -> None:
            while await self.run_once():
                pass

        await asyncio.gather(*(drain() for _ in range(self._concurrency)))


__all__ = [
    "ConversationAnalysisHandler",
    "DocumentIngestionHandler",
    "Handler",
    "MessageProcessingHandler",
    "WorkerPool",
    "chunk_point_id",
]
