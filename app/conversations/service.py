"""Turn orchestration: analysis, retrieval, generation and persistence."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

from ..agents.errors import ModelInvocationError, ModelRateLimitError
from ..agents.invoker import ModelInvoker
from ..agents.postprocess import ResponsePostProcessor
from ..agents.prompts import ChatMessage, PromptAssembler
from ..agents.schemas import AgentConfig
from ..core.settings import PipelineSettings, get_settings
from ..events import (
    AGENT_ERROR,
    AGENT_TYPING,
    CONVERSATION_ENDED,
    CONVERSATION_PAUSED,
    CONVERSATION_STARTED,
    CONVERSATION_TRANSFERRED,
    MESSAGE_NEW,
    EventPublisher,
    NullEventPublisher,
)
from ..nlp import TextAnalysis, TextAnalyzer, sentiment_label
from ..retrieval import ContextChunk, ContextRetriever, RetrievalError
from . import schemas
from .errors import (
    ConversationError,
    ConversationNotActiveError,
    ConversationNotFoundError,
    InvalidTurnError,
    ModelUnavailableError,
    TurnFailedError,
    TurnPersistenceError,
)
from .locks import ConversationLocks
from .models import ConversationStatus, MessageRole, NewMessage, TurnResult
from .repository import MessageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENDED_NOTE = "השיחה הסתיימה"
TRANSFERRED_NOTE = "השיחה הועברה לנציג אנושי"
PAUSED_NOTE = "השיחה הושהתה"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _with_reason(note: str, reason: str | None) -> str:
    return f"{note}: {reason}" if reason else note


def conversation_metrics(
    conversation: schemas.Conversation,
    messages: Sequence[schemas.Message],
    ended_at: datetime,
) -> dict[str, Any]:
    """Duration, message count and mean user-to-assistant response time."""

    gaps = [
        (current.created_at - previous.created_at).total_seconds()
        for previous, current in zip(messages, messages[1:])
        if previous.role is MessageRole.USER and current.role is MessageRole.ASSISTANT
    ]
    return {
        "duration_seconds": round((ended_at - conversation.started_at).total_seconds(), 3),
        "message_count": len(messages),
        "avg_response_time_seconds": round(sum(gaps) / len(gaps), 3) if gaps else None,
    }


class ConversationService:
    """Coordinates the per-turn pipeline and conversation lifecycle.

    A turn validates input, then under the conversation's lock analyses the
    text, retrieves context, assembles the prompt, invokes the model with
    bounded retries and persists the user/assistant pair atomically. Events
    are published after the outcome is known and never affect it.
    """

    def __init__(
        self,
        store: MessageStore,
        retriever: ContextRetriever,
        invoker: ModelInvoker,
        *,
        analyzer: TextAnalyzer | None = None,
        assembler: PromptAssembler | None = None,
        post_processor: ResponsePostProcessor | None = None,
        publisher: EventPublisher | None = None,
        settings: PipelineSettings | None = None,
        locks: ConversationLocks | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._retriever = retriever
        self._invoker = invoker
        self._analyzer = analyzer or TextAnalyzer()
        self._assembler = assembler or PromptAssembler(
            history_limit=self._settings.history_limit,
            char_budget=self._settings.prompt_char_budget,
        )
        self._post_processor = post_processor or ResponsePostProcessor(
            self._settings.response_confidence
        )
        self._publisher = publisher or NullEventPublisher()
        self._locks = locks or ConversationLocks()
        self._sleep = sleep
        self._random = rng or random.Random()

    # ------------------------------------------------------------------
    # Lifecycle

    async def start_conversation(
        self,
        agent_id: str,
        channel: str = "web",
        metadata: dict[str, Any] | None = None,
    ) -> schemas.Conversation:
        if not agent_id or not agent_id.strip():
            raise InvalidTurnError("agent_id is required")
        conversation = await self._store.create_conversation(
            agent_id, channel=channel, metadata=metadata
        )
        logger.info(
            "Conversation started",
            extra={"conversation_id": conversation.id, "agent_id": agent_id},
        )
        await self._publish(
            CONVERSATION_STARTED,
            {
                "conversation_id": conversation.id,
                "agent_id": agent_id,
                "channel": channel,
                "started_at": conversation.started_at.isoformat(),
            },
        )
        return conversation

    async def get_conversation(self, conversation_id: str) -> schemas.ConversationDetail:
        conversation = await self.require_conversation(conversation_id)
        messages = await self._list_messages(conversation_id)
        return schemas.ConversationDetail(
            **conversation.model_dump(), messages=[m.model_dump() for m in messages]
        )

    async def end_conversation(
        self,
        conversation_id: str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> schemas.Conversation:
        async with self._locks.hold(conversation_id):
            conversation = await self.require_conversation(conversation_id)
            if conversation.status.is_terminal:
                logger.info(
                    "End requested for %s conversation; nothing to do",
                    conversation.status.value,
                    extra={"conversation_id": conversation_id},
                )
                return conversation
            messages = await self._list_messages(conversation_id)
            metrics = conversation_metrics(conversation, messages, _now())
            note = NewMessage(
                role=MessageRole.SYSTEM,
                content=_with_reason(ENDED_NOTE, reason),
                metadata={"event": "ended", "reason": reason, "actor": actor},
            )
            updated = await self._change_status(
                conversation_id,
                ConversationStatus.ENDED,
                note,
                {"metrics": metrics, "ended_by": actor, "end_reason": reason},
            )
        await self._publish(
            CONVERSATION_ENDED,
            {"conversation_id": conversation_id, "reason": reason, "metrics": metrics},
        )
        return updated

    async def transfer_conversation(
        self,
        conversation_id: str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> schemas.Conversation:
        async with self._locks.hold(conversation_id):
            conversation = await self.require_conversation(conversation_id)
            if conversation.status.is_terminal:
                logger.info(
                    "Transfer requested for %s conversation; nothing to do",
                    conversation.status.value,
                    extra={"conversation_id": conversation_id},
                )
                return conversation
            transferred_at = _now().isoformat()
            note = NewMessage(
                role=MessageRole.SYSTEM,
                content=_with_reason(TRANSFERRED_NOTE, reason),
                metadata={"event": "transferred", "reason": reason, "actor": actor},
            )
            updated = await self._change_status(
                conversation_id,
                ConversationStatus.TRANSFERRED,
                note,
                {
                    "transferred_at": transferred_at,
                    "transferred_by": actor,
                    "transfer_reason": reason,
                },
            )
        await self._publish(
            CONVERSATION_TRANSFERRED,
            {
                "conversation_id": conversation_id,
                "reason": reason,
                "transferred_by": actor,
                "transferred_at": transferred_at,
            },
        )
        return updated

    async def pause_conversation(
        self,
        conversation_id: str,
        reason: str | None = None,
        actor: str | None = None,
    ) -> schemas.Conversation:
        async with self._locks.hold(conversation_id):
            conversation = await self.require_conversation(conversation_id)
            if conversation.status is not ConversationStatus.ACTIVE:
                return conversation
            note = NewMessage(
                role=MessageRole.SYSTEM,
                content=_with_reason(PAUSED_NOTE, reason),
                metadata={"event": "paused", "reason": reason, "actor": actor},
            )
            updated = await self._change_status(
                conversation_id,
                ConversationStatus.PAUSED,
                note,
                {"paused_at": _now().isoformat(), "paused_by": actor},
            )
        await self._publish(
            CONVERSATION_PAUSED, {"conversation_id": conversation_id, "reason": reason}
        )
        return updated

    # ------------------------------------------------------------------
    # Turn processing

    async def process_turn(
        self,
        conversation_id: str,
        agent_config: AgentConfig,
        user_input: str,
        metadata: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> TurnResult:
        text = user_input if isinstance(user_input, str) else ""
        if not text.strip():
            raise InvalidTurnError(
                "Message content must not be empty", conversation_id=conversation_id
            )
        if len(text) > self._settings.max_message_length:
            raise InvalidTurnError(
                f"Message exceeds {self._settings.max_message_length} characters",
                conversation_id=conversation_id,
            )
        received_at = _now()
        deadline = self._settings.turn_timeout_seconds if timeout is None else timeout

        async with self._locks.hold(conversation_id):
            try:
                conversation = await self.require_conversation(conversation_id)
            except TurnPersistenceError as error:
                await self._publish_error(error)
                raise
            if conversation.status is not ConversationStatus.ACTIVE:
                raise ConversationNotActiveError(
                    f"Conversation {conversation_id} is {conversation.status.value}",
                    conversation_id=conversation_id,
                )
            log_extra = {
                "conversation_id": conversation_id,
                "agent_id": conversation.agent_id,
            }
            await self._publish(
                AGENT_TYPING, {"conversation_id": conversation_id, "is_typing": True}
            )
            try:
                analysis, result = await asyncio.wait_for(
                    self._generate(conversation, agent_config, text), timeout=deadline
                )
            except asyncio.TimeoutError:
                error = ModelUnavailableError(
                    f"Turn did not complete within {deadline} seconds",
                    conversation_id=conversation_id,
                )
                logger.warning("Turn timed out", extra=log_extra)
                await self._publish_error(error)
                raise error from None
            except ConversationError as error:
                await self._publish_error(error)
                raise

            user_message = NewMessage(
                role=MessageRole.USER,
                content=text,
                metadata={**(metadata or {}), "nlp": analysis.summary()},
                created_at=received_at,
            )
            assistant_message = NewMessage(
                role=MessageRole.ASSISTANT,
                content=result.content,
                metadata={
                    **result.metadata,
                    "confidence": result.confidence,
                    "suggested_actions": list(result.suggested_actions),
                },
            )
            try:
                _, assistant = await self._guarded(
                    conversation_id,
                    "store the conversation turn",
                    self._store.append_turn(
                        conversation_id, user_message, assistant_message
                    ),
                )
            except ConversationError as error:
                await self._publish_error(error)
                raise

        logger.info("Turn completed", extra={**log_extra, "message_id": assistant.id})
        await self._publish(
            MESSAGE_NEW,
            {
                "conversation_id": conversation_id,
                "message": assistant.model_dump(mode="json"),
                "suggested_actions": list(result.suggested_actions),
            },
        )
        return result

    async def _generate(
        self,
        conversation: schemas.Conversation,
        agent_config: AgentConfig,
        text: str,
    ) -> tuple[TextAnalysis, TurnResult]:
        analysis = self._analyzer.analyze(text)
        chunks = await self._retrieve(conversation, analysis)
        history = await self._guarded(
            conversation.id,
            "read conversation history",
            self._store.read_recent_history(
                conversation.id, self._settings.history_fetch_limit
            ),
        )

        messages = self._assembler.assemble(
            agent_config, analysis, chunks, history, text
        )
        model = self._invoker.resolve_model(agent_config.model)
        raw = await self._invoke_with_retry(
            conversation.id, model, messages, agent_config
        )
        result = self._post_processor.process(
            raw, analysis.is_hebrew, model=model, language=analysis.language
        )
        result.metadata["context_documents"] = [chunk.document_id for chunk in chunks]
        return analysis, result

    async def _retrieve(
        self, conversation: schemas.Conversation, analysis: TextAnalysis
    ) -> list[ContextChunk]:
        try:
            return await self._retriever.retrieve(
                conversation.agent_id,
                analysis.normalized_text or analysis.text,
                self._settings.retrieval_top_k,
            )
        except RetrievalError:
            logger.warning(
                "Context retrieval failed; continuing without knowledge",
                exc_info=True,
                extra={
                    "conversation_id": conversation.id,
                    "agent_id": conversation.agent_id,
                },
            )
            return []

    def _backoff(self, attempt: int, error: ModelInvocationError) -> float:
        max_delay = self._settings.model_retry_max_delay
        if isinstance(error, ModelRateLimitError) and error.retry_after:
            return min(error.retry_after, max_delay)
        base = self._settings.model_retry_base_delay
        jitter = self._random.uniform(0, base / 2)
        return min(base * (2 ** (attempt - 1)) + jitter, max_delay)

    async def _invoke_with_retry(
        self,
        conversation_id: str,
        model: str,
        messages: list[ChatMessage],
        agent_config: AgentConfig,
    ) -> str:
        attempts = self._settings.model_max_attempts
        last_error: ModelInvocationError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self._invoker.invoke(
                    model,
                    messages,
                    temperature=agent_config.temperature,
                    max_tokens=agent_config.max_tokens,
                )
            except ModelInvocationError as exc:
                if not exc.retryable:
                    raise TurnFailedError(
                        f"Model request was rejected: {exc}",
                        conversation_id=conversation_id,
                    ) from exc
                last_error = exc
                if attempt == attempts:
                    break
                delay = self._backoff(attempt, exc)
                logger.warning(
                    "Model call failed (attempt %d/%d); retrying in %.2fs",
                    attempt,
                    attempts,
                    delay,
                    extra={
                        "conversation_id": conversation_id,
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                    },
                )
                await self._sleep(delay)
        raise ModelUnavailableError(
            f"Model {model} unavailable after {attempts} attempts",
            conversation_id=conversation_id,
        ) from last_error

    # ------------------------------------------------------------------
    # Insights

    async def analyze_conversation(
        self, conversation_id: str, *, annotate: bool = False
    ) -> schemas.ConversationInsights:
        """Summarise sentiment, entities and language across user messages."""

        await self.require_conversation(conversation_id)
        messages = await self._list_messages(conversation_id)
        breakdown: list[schemas.SentimentBreakdown] = []
        entities: dict[str, list[str]] = {}
        languages: Counter[str] = Counter()
        for message in messages:
            if message.role is not MessageRole.USER:
                continue
            analysis = self._analyzer.analyze(message.content)
            languages[analysis.language] += 1
            breakdown.append(
                schemas.SentimentBreakdown(
                    message_id=message.id,
                    score=analysis.sentiment.score,
                    label=analysis.sentiment.label,
                )
            )
            for entity in analysis.entities:
                values = entities.setdefault(entity.type, [])
                if entity.value not in values:
                    values.append(entity.value)

        average = sum(item.score for item in breakdown) / len(breakdown) if breakdown else 0.0
        insights = schemas.ConversationInsights(
            conversation_id=conversation_id,
            language=languages.most_common(1)[0][0] if languages else "unknown",
            overall_sentiment=sentiment_label(average),
            average_score=round(average, 4),
            sentiment_breakdown=breakdown,
            entities=entities,
            message_count=len(messages),
            analyzed_at=_now(),
        )
        if annotate:
            await self._guarded(
                conversation_id,
                "annotate conversation",
                self._store.annotate_conversation(
                    conversation_id, {"analysis": insights.model_dump(mode="json")}
                ),
            )
        return insights

    # ------------------------------------------------------------------
    # Helpers

    async def _guarded(
        self, conversation_id: str, action: str, operation: Awaitable[T]
    ) -> T:
        """Await a store operation, reporting driver failures as persistence errors."""

        try:
            return await operation
        except ConversationError:
            raise
        except Exception as exc:
            logger.exception(
                "Failed to %s", action, extra={"conversation_id": conversation_id}
            )
            raise TurnPersistenceError(
                f"Failed to {action}", conversation_id=conversation_id
            ) from exc

    async def require_conversation(self, conversation_id: str) -> schemas.Conversation:
        """Load a conversation or raise :class:`ConversationNotFoundError`."""

        conversation = await self._guarded(
            conversation_id,
            "load conversation",
            self._store.get_conversation(conversation_id),
        )
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return conversation

    async def _list_messages(self, conversation_id: str) -> list[schemas.Message]:
        return await self._guarded(
            conversation_id,
            "list conversation messages",
            self._store.list_messages(conversation_id),
        )

    async def _change_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        note: NewMessage,
        metadata: dict[str, Any],
    ) -> schemas.Conversation:
        try:
            return await self._guarded(
                conversation_id,
                f"mark conversation {status.value}",
                self._store.update_conversation_status(
                    conversation_id, status, note, metadata
                ),
            )
        except TurnPersistenceError as error:
            await self._publish_error(error)
            raise

    async def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            await self._publisher.publish(topic, payload)
        except Exception:
            logger.warning("Failed to publish %s event", topic, exc_info=True)

    async def _publish_error(self, error: ConversationError) -> None:
        await self._publish(
            AGENT_ERROR,
            {"conversation_id": error.conversation_id, **error.as_dict()},
        )


__all__ = ["ConversationService", "conversation_metrics"]
