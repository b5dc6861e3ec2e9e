"""Explicit construction and lifecycle of the turn pipeline components."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from ..agents.invoker import ModelInvoker
from ..agents.postprocess import ResponsePostProcessor
from ..agents.prompts import PromptAssembler
from ..agents.providers import ChatCompletionProvider, ModelRegistry, build_chat_provider
from ..agents.schemas import AgentConfig
from ..conversations.repository import (
    InMemoryConversationRepository,
    MessageStore,
    PostgresConversationRepository,
)
from ..conversations.service import ConversationService
from ..events import InMemoryEventBroker
from ..ingestion.models import DocumentPayload, MessagePayload, WorkItem, WorkKind
from ..ingestion.queue import InMemoryWorkQueue, PostgresWorkQueue, WorkQueue
from ..ingestion.worker import (
    ConversationAnalysisHandler,
    DocumentIngestionHandler,
    MessageProcessingHandler,
    WorkerPool,
)
from ..nlp import TextAnalyzer
from ..retrieval import (
    ContextRetriever,
    EmbeddingProvider,
    FastEmbedProvider,
    InMemoryVectorIndex,
    PgVectorIndex,
    VectorIndex,
)
from .settings import PipelineSettings, get_settings

logger = logging.getLogger(__name__)


class AgentDirectory:
    """Agent configurations keyed by agent id, with a shared default."""

    def __init__(
        self,
        default: AgentConfig | None = None,
        configs: Mapping[str, AgentConfig] | None = None,
    ) -> None:
        self._default = default or AgentConfig()
        self._configs: dict[str, AgentConfig] = dict(configs or {})

    @classmethod
    def from_file(cls, path: str | Path, default: AgentConfig | None = None) -> "AgentDirectory":
        """Load ``{"agents": {"<id>": {...AgentConfig fields...}}}`` from JSON."""

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = data.get("agents", data)
        configs = {
            agent_id: AgentConfig(**{**values, "agent_id": agent_id})
            for agent_id, values in entries.items()
        }
        logger.info("Loaded %d agent configurations from %s", len(configs), path)
        return cls(default=default, configs=configs)

    def register(self, agent_id: str, config: AgentConfig) -> None:
        self._configs[agent_id] = config.model_copy(update={"agent_id": agent_id})

    def get(self, agent_id: str) -> AgentConfig:
        config = self._configs.get(agent_id)
        if config is not None:
            return config
        return self._default.model_copy(update={"agent_id": agent_id})

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._configs


class PipelineState(str, Enum):
    CONSTRUCTED = "constructed"
    READY = "ready"
    CLOSED = "closed"


class Pipeline:
    """Owns every pipeline component; nothing is a module-level singleton.

    ``build`` wires PostgreSQL-backed components when a database URL is
    configured and in-memory ones otherwise. Any component can be passed in
    explicitly, which is how tests substitute fakes.
    """

    def __init__(
        self,
        *,
        settings: PipelineSettings,
        service: ConversationService,
        store: MessageStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        queue: WorkQueue,
        workers: WorkerPool,
        broker: InMemoryEventBroker,
        agents: AgentDirectory,
    ) -> None:
        self.settings = settings
        self.service = service
        self.store = store
        self.index = index
        self.embedder = embedder
        self.queue = queue
        self.workers = workers
        self.broker = broker
        self.agents = agents
        self.state = PipelineState.CONSTRUCTED

    @classmethod
    def build(
        cls,
        settings: PipelineSettings | None = None,
        *,
        embedder: EmbeddingProvider | None = None,
        chat_provider: ChatCompletionProvider | None = None,
        store: MessageStore | None = None,
        index: VectorIndex | None = None,
        queue: WorkQueue | None = None,
        broker: InMemoryEventBroker | None = None,
        agents: AgentDirectory | None = None,
    ) -> "Pipeline":
        settings = settings or get_settings()
        dsn = settings.database_url
        if dsn:
            store = store or PostgresConversationRepository(dsn)
            index = index or PgVectorIndex(dsn)
            queue = queue or PostgresWorkQueue(dsn, max_attempts=settings.work_max_attempts)
        else:
            logger.warning("DATABASE_URL not set; using in-memory storage")
            store = store or InMemoryConversationRepository()
            index = index or InMemoryVectorIndex()
            queue = queue or InMemoryWorkQueue(max_attempts=settings.work_max_attempts)

        embedder = embedder or FastEmbedProvider(
            settings.embedding_model, settings.embedding_dim
        )
        broker = broker or InMemoryEventBroker()
        if agents is None:
            default = AgentConfig(model=settings.default_model)
            agents = (
                AgentDirectory.from_file(settings.agent_config_file, default=default)
                if settings.agent_config_file
                else AgentDirectory(default=default)
            )

        analyzer = TextAnalyzer()
        invoker = ModelInvoker(
            chat_provider or build_chat_provider(),
            ModelRegistry(default_model=settings.default_model),
        )
        service = ConversationService(
            store,
            ContextRetriever(embedder, index, default_k=settings.retrieval_top_k),
            invoker,
            analyzer=analyzer,
            assembler=PromptAssembler(
                history_limit=settings.history_limit,
                char_budget=settings.prompt_char_budget,
            ),
            post_processor=ResponsePostProcessor(settings.response_confidence),
            publisher=broker,
            settings=settings,
        )
        workers = WorkerPool(
            queue,
            {
                WorkKind.DOCUMENT_PROCESSING: DocumentIngestionHandler(
                    embedder, index, analyzer
                ),
                WorkKind.CONVERSATION_ANALYSIS: ConversationAnalysisHandler(service),
                WorkKind.MESSAGE_PROCESSING: MessageProcessingHandler(service, agents),
            },
            concurrency=settings.worker_concurrency,
        )
        return cls(
            settings=settings,
            service=service,
            store=store,
            index=index,
            embedder=embedder,
            queue=queue,
            workers=workers,
            broker=broker,
            agents=agents,
        )

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self, *, run_workers: bool = True) -> None:
        if self.state is PipelineState.CLOSED:
            raise RuntimeError("Pipeline has been closed")
        if self.state is PipelineState.READY:
            return
        if run_workers:
            self.workers.start()
        self.state = PipelineState.READY
        logger.info("Pipeline ready")

    async def close(self) -> None:
        if self.state is PipelineState.CLOSED:
            return
        await self.workers.stop()
        self.state = PipelineState.CLOSED
        logger.info("Pipeline closed")

    # ------------------------------------------------------------------
    # Background work

    async def enqueue_document(
        self,
        agent_id: str,
        content: str,
        *,
        document_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WorkItem:
        payload = DocumentPayload(
            agent_id=agent_id,
            document_id=document_id or str(uuid4()),
            content=content,
            metadata=dict(metadata or {}),
        )
        return await self.queue.enqueue(WorkKind.DOCUMENT_PROCESSING, payload.as_dict())

    async def enqueue_analysis(self, conversation_id: str) -> WorkItem:
        return await self.queue.enqueue(
            WorkKind.CONVERSATION_ANALYSIS, {"conversation_id": conversation_id}
        )

    async def enqueue_message(
        self,
        conversation_id: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> WorkItem:
        """Queue a user message to be answered by a background worker."""

        payload = MessagePayload(
            conversation_id=conversation_id,
            content=content,
            metadata=dict(metadata or {}),
        )
        return await self.queue.enqueue(WorkKind.MESSAGE_PROCESSING, payload.as_dict())


__all__ = ["AgentDirectory", "Pipeline", "PipelineState"]
