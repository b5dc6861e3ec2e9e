import hashlib
import math
import pathlib
import sys
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi import FastAPI

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.agents.invoker import ModelInvoker
from app.agents.providers import ModelRegistry
from app.app_logging import init_logging
from app.conversations.repository import InMemoryConversationRepository
from app.conversations.service import ConversationService
from app.core.settings import PipelineSettings
from app.retrieval import ContextRetriever, InMemoryVectorIndex


class FakeEmbedder:
    """Bag-of-words hashing embedder; identical texts give identical vectors."""

    def __init__(self, dimension: int = 16, *, fail: bool = False) -> None:
        self.dimension = dimension
        self.fail = fail
        self.calls: list[str] = []

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dimension
        for token in text.split():
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vec[digest[0] % self.dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding backend offline")
        return self._vector(text)

    async def embed_many(self, texts):
        return [await self.embed(text) for text in texts]


class ScriptedChatProvider:
    """Chat provider replaying scripted replies or raising scripted errors."""

    name = "scripted"

    def __init__(self, *script: Any, default: str = "בסדר גמור") -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def complete(self, model, messages, *, temperature, max_tokens):
        self.calls.append(
            {
                "model": model,
                "messages": list(messages),
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        step = self.script.pop(0) if self.script else self.default
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step()
        return step


class RecordingPublisher:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = fail

    async def publish(self, topic, payload):
        self.events.append((topic, payload))
        if self.fail:
            raise RuntimeError("broker down")

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


class FailingAppendStore(InMemoryConversationRepository):
    """In-memory store whose turn append always fails."""

    async def append_turn(self, conversation_id, user_message, assistant_message):
        raise OSError("disk full")


class OutageStore(InMemoryConversationRepository):
    """In-memory store whose named operations fail once ``down`` is set."""

    def __init__(self, *operations: str) -> None:
        super().__init__()
        self.operations = set(operations)
        self.down = False

    def _check(self, operation: str) -> None:
        if self.down and operation in self.operations:
            raise OSError("connection refused")

    async def get_conversation(self, conversation_id):
        self._check("get_conversation")
        return await super().get_conversation(conversation_id)

    async def list_messages(self, conversation_id):
        self._check("list_messages")
        return await super().list_messages(conversation_id)

    async def read_recent_history(self, conversation_id, limit):
        self._check("read_recent_history")
        return await super().read_recent_history(conversation_id, limit)

    async def update_conversation_status(
        self, conversation_id, status, note=None, metadata=None
    ):
        self._check("update_conversation_status")
        return await super().update_conversation_status(
            conversation_id, status, note, metadata
        )


@dataclass
class ServiceHarness:
    service: ConversationService
    store: InMemoryConversationRepository
    provider: ScriptedChatProvider
    publisher: RecordingPublisher
    index: InMemoryVectorIndex
    embedder: FakeEmbedder
    sleeps: list[float] = field(default_factory=list)


def build_service(
    *script: Any,
    store: InMemoryConversationRepository | None = None,
    settings: PipelineSettings | None = None,
    embedder: FakeEmbedder | None = None,
    publisher: RecordingPublisher | None = None,
) -> ServiceHarness:
    store = store or InMemoryConversationRepository()
    embedder = embedder or FakeEmbedder()
    index = InMemoryVectorIndex()
    provider = ScriptedChatProvider(*script)
    publisher = publisher or RecordingPublisher()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    settings = settings or PipelineSettings(
        model_retry_base_delay=0.01, model_retry_max_delay=0.05
    )
    service = ConversationService(
        store,
        ContextRetriever(embedder, index, default_k=settings.retrieval_top_k),
        ModelInvoker(provider, ModelRegistry(default_model=settings.default_model)),
        publisher=publisher,
        settings=settings,
        sleep=fake_sleep,
    )
    return ServiceHarness(
        service=service,
        store=store,
        provider=provider,
        publisher=publisher,
        index=index,
        embedder=embedder,
        sleeps=sleeps,
    )


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()
        init_logging(app)
        return app

    return _create_app
