import asyncio

import pytest

from app.agents.errors import ModelInvocationError, ModelRateLimitError
from app.agents.schemas import AgentConfig
from app.conversations.errors import (
    ConversationNotActiveError,
    ConversationNotFoundError,
    InvalidTurnError,
    ModelUnavailableError,
    TurnFailedError,
    TurnPersistenceError,
)
from app.conversations.models import ConversationStatus, MessageRole
from app.conversations.service import ENDED_NOTE, TRANSFERRED_NOTE
from app.core.settings import PipelineSettings
from app.events import (
    AGENT_ERROR,
    AGENT_TYPING,
    CONVERSATION_ENDED,
    CONVERSATION_STARTED,
    CONVERSATION_TRANSFERRED,
    MESSAGE_NEW,
)
from app.retrieval import VectorPoint
from conftest import (
    FailingAppendStore,
    FakeEmbedder,
    OutageStore,
    RecordingPublisher,
    build_service,
)

AGENT = AgentConfig(agent_id="support-bot", model="gpt-4")


def _start(harness, agent_id="support-bot"):
    return asyncio.run(harness.service.start_conversation(agent_id))


def test_hebrew_turn_end_to_end():
    harness = build_service("שלום! איכ אוכל לעזור? האם תרצה שאבדוק את ההזמנה?")
    embedder = harness.embedder
    asyncio.run(
        harness.index.upsert(
            [
                VectorPoint(
                    id="p1",
                    agent_id="support-bot",
                    document_id="faq",
                    vector=embedder._vector("שלום, אני צריך עזרה"),
                    text="שירות הלקוחות זמין בימים א-ה",
                )
            ]
        )
    )
    conversation = _start(harness)

    result = asyncio.run(
        harness.service.process_turn(conversation.id, AGENT, "שלום, אני צריכ עזרה")
    )

    assert result.content.startswith("שלום! איך אוכל לעזור?")
    assert result.confidence == 0.95
    assert result.suggested_actions == ["אבדוק את ההזמנה"]
    assert result.metadata["rtl_formatted"] is True
    assert result.metadata["context_documents"] == ["faq"]

    messages = asyncio.run(harness.store.list_messages(conversation.id))
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[0].content == "שלום, אני צריכ עזרה"
    assert messages[0].metadata["nlp"]["normalized_text"] == "שלום, אני צריך עזרה"
    assert messages[1].metadata["confidence"] == 0.95
    assert messages[0].id < messages[1].id

    sent = harness.provider.calls[0]["messages"]
    assert sent[0].role == "system"
    assert "שירות הלקוחות זמין" in sent[0].content
    assert sent[-1].content == "שלום, אני צריכ עזרה"

    assert harness.publisher.topics() == [CONVERSATION_STARTED, AGENT_TYPING, MESSAGE_NEW]


def test_history_is_replayed_on_the_next_turn():
    harness = build_service("תשובה ראשונה", "תשובה שנייה")
    conversation = _start(harness)

    asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שאלה ראשונה"))
    asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שאלה שנייה"))

    sent = [m.content for m in harness.provider.calls[1]["messages"][1:]]
    assert sent == ["שאלה ראשונה", "תשובה ראשונה", "שאלה שנייה"]


@pytest.mark.parametrize("text", ["", "   ", None])
def test_blank_input_is_rejected_before_any_work(text):
    harness = build_service()
    conversation = _start(harness)

    with pytest.raises(InvalidTurnError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, text))

    assert harness.provider.calls == []
    assert asyncio.run(harness.store.list_messages(conversation.id)) == []


def test_overlong_input_is_rejected():
    harness = build_service(settings=PipelineSettings(max_message_length=10))
    conversation = _start(harness)

    with pytest.raises(InvalidTurnError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "א" * 11))


def test_unknown_conversation():
    harness = build_service()
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(harness.service.process_turn("missing", AGENT, "שלום"))


def test_turn_on_ended_conversation_is_rejected():
    harness = build_service()
    conversation = _start(harness)
    asyncio.run(harness.service.end_conversation(conversation.id))

    with pytest.raises(ConversationNotActiveError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))
    assert harness.provider.calls == []


def test_persistence_failure_leaves_no_partial_turn():
    harness = build_service("תשובה", store=FailingAppendStore())
    conversation = _start(harness)

    with pytest.raises(TurnPersistenceError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert asyncio.run(harness.store.list_messages(conversation.id)) == []
    assert harness.publisher.topics()[-1] == AGENT_ERROR
    assert MESSAGE_NEW not in harness.publisher.topics()


@pytest.mark.parametrize("operation", ["get_conversation", "read_recent_history"])
def test_store_read_failure_during_turn_is_reported(operation):
    store = OutageStore(operation)
    harness = build_service("תשובה", store=store)
    conversation = _start(harness)
    store.down = True

    with pytest.raises(TurnPersistenceError) as excinfo:
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert excinfo.value.conversation_id == conversation.id
    assert isinstance(excinfo.value.__cause__, OSError)
    topic, payload = harness.publisher.events[-1]
    assert topic == AGENT_ERROR
    assert payload["kind"] == "internal"
    assert MESSAGE_NEW not in harness.publisher.topics()
    store.down = False
    assert asyncio.run(store.list_messages(conversation.id)) == []


def test_store_outage_on_lifecycle_calls_is_reported():
    store = OutageStore("list_messages", "update_conversation_status")
    harness = build_service(store=store)
    conversation = _start(harness)
    store.down = True

    with pytest.raises(TurnPersistenceError):
        asyncio.run(harness.service.end_conversation(conversation.id))
    with pytest.raises(TurnPersistenceError):
        asyncio.run(harness.service.transfer_conversation(conversation.id))
    with pytest.raises(TurnPersistenceError):
        asyncio.run(harness.service.get_conversation(conversation.id))
    with pytest.raises(TurnPersistenceError):
        asyncio.run(harness.service.analyze_conversation(conversation.id))

    assert harness.publisher.topics().count(AGENT_ERROR) == 1
    assert CONVERSATION_ENDED not in harness.publisher.topics()
    assert CONVERSATION_TRANSFERRED not in harness.publisher.topics()
    store.down = False
    current = asyncio.run(store.get_conversation(conversation.id))
    assert current.status is ConversationStatus.ACTIVE
    assert asyncio.run(store.list_messages(conversation.id)) == []


def test_retryable_errors_are_retried_then_succeed():
    harness = build_service(
        ModelInvocationError("502", retryable=True),
        ModelRateLimitError("slow down", retry_after=0.03),
        "הצלחה",
    )
    conversation = _start(harness)

    result = asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert result.content == "הצלחה"
    assert len(harness.provider.calls) == 3
    assert len(harness.sleeps) == 2
    assert 0.01 <= harness.sleeps[0] <= 0.05
    assert harness.sleeps[1] == pytest.approx(0.03)


def test_retry_exhaustion_raises_model_unavailable():
    harness = build_service(*[ModelInvocationError("down", retryable=True)] * 3)
    conversation = _start(harness)

    with pytest.raises(ModelUnavailableError) as excinfo:
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert excinfo.value.kind.value == "retry_later"
    assert len(harness.provider.calls) == 3
    assert asyncio.run(harness.store.list_messages(conversation.id)) == []
    topic, payload = harness.publisher.events[-1]
    assert topic == AGENT_ERROR
    assert payload["kind"] == "retry_later"


def test_non_retryable_error_fails_immediately():
    harness = build_service(ModelInvocationError("bad request", retryable=False))
    conversation = _start(harness)

    with pytest.raises(TurnFailedError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))
    assert len(harness.provider.calls) == 1
    assert harness.sleeps == []


def test_turn_deadline_raises_model_unavailable():
    async def slow():
        await asyncio.sleep(1)
        return "מאוחר מדי"

    harness = build_service(slow)
    conversation = _start(harness)

    with pytest.raises(ModelUnavailableError):
        asyncio.run(
            harness.service.process_turn(conversation.id, AGENT, "שלום", timeout=0.05)
        )
    assert asyncio.run(harness.store.list_messages(conversation.id)) == []


def test_retrieval_failure_degrades_to_no_context():
    harness = build_service("תשובה", embedder=FakeEmbedder(fail=True))
    conversation = _start(harness)

    result = asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert result.metadata["context_documents"] == []
    assert "<knowledge>" not in harness.provider.calls[0]["messages"][0].content


def test_publisher_failures_do_not_affect_turns():
    harness = build_service("תשובה", publisher=RecordingPublisher(fail=True))
    conversation = _start(harness)

    result = asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    assert result.content == "תשובה"
    assert len(asyncio.run(harness.store.list_messages(conversation.id))) == 2


def test_concurrent_turns_are_serialized():
    release = asyncio.Event()
    order = []

    async def first():
        order.append("first-start")
        await release.wait()
        order.append("first-end")
        return "ראשון"

    async def second():
        order.append("second-start")
        return "שני"

    harness = build_service(first, second)
    conversation = _start(harness)

    async def scenario():
        t1 = asyncio.create_task(
            harness.service.process_turn(conversation.id, AGENT, "שאלה 1")
        )
        await asyncio.sleep(0)
        t2 = asyncio.create_task(
            harness.service.process_turn(conversation.id, AGENT, "שאלה 2")
        )
        await asyncio.sleep(0.01)
        release.set()
        return await asyncio.gather(t1, t2)

    results = asyncio.run(scenario())

    assert [r.content for r in results] == ["ראשון", "שני"]
    assert order == ["first-start", "first-end", "second-start"]
    messages = asyncio.run(harness.store.list_messages(conversation.id))
    assert [m.content for m in messages] == ["שאלה 1", "ראשון", "שאלה 2", "שני"]


def test_end_conversation_records_metrics_and_note():
    harness = build_service("תשובה")
    conversation = _start(harness)
    asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    ended = asyncio.run(
        harness.service.end_conversation(conversation.id, reason="נפתר", actor="agent-7")
    )

    assert ended.status is ConversationStatus.ENDED
    assert ended.ended_at is not None
    metrics = ended.metadata["metrics"]
    assert metrics["message_count"] == 2
    assert metrics["avg_response_time_seconds"] >= 0
    assert ended.metadata["ended_by"] == "agent-7"

    messages = asyncio.run(harness.store.list_messages(conversation.id))
    assert messages[-1].role is MessageRole.SYSTEM
    assert messages[-1].content == f"{ENDED_NOTE}: נפתר"
    assert harness.publisher.topics()[-1] == CONVERSATION_ENDED


def test_transfer_is_idempotent_on_terminal_conversations():
    harness = build_service()
    conversation = _start(harness)

    first = asyncio.run(harness.service.transfer_conversation(conversation.id, reason="בקשת לקוח"))
    again = asyncio.run(harness.service.transfer_conversation(conversation.id))
    ended = asyncio.run(harness.service.end_conversation(conversation.id))

    assert first.status is ConversationStatus.TRANSFERRED
    assert first.metadata["transfer_reason"] == "בקשת לקוח"
    assert again.status is ConversationStatus.TRANSFERRED
    assert ended.status is ConversationStatus.TRANSFERRED
    messages = asyncio.run(harness.store.list_messages(conversation.id))
    assert [m.content for m in messages] == [f"{TRANSFERRED_NOTE}: בקשת לקוח"]
    assert harness.publisher.topics().count(CONVERSATION_TRANSFERRED) == 1
    assert CONVERSATION_ENDED not in harness.publisher.topics()


def test_pause_then_end():
    harness = build_service()
    conversation = _start(harness)

    paused = asyncio.run(harness.service.pause_conversation(conversation.id))
    assert paused.status is ConversationStatus.PAUSED
    with pytest.raises(ConversationNotActiveError):
        asyncio.run(harness.service.process_turn(conversation.id, AGENT, "שלום"))

    ended = asyncio.run(harness.service.end_conversation(conversation.id))
    assert ended.status is ConversationStatus.ENDED


def test_start_requires_agent():
    harness = build_service()
    with pytest.raises(InvalidTurnError):
        asyncio.run(harness.service.start_conversation("  "))


def test_analyze_conversation_summarises_user_messages():
    harness = build_service("תשובה", "תשובה")
    conversation = _start(harness)
    asyncio.run(
        harness.service.process_turn(conversation.id, AGENT, "השירות מעולה, תודה רבה")
    )
    asyncio.run(
        harness.service.process_turn(
            conversation.id, AGENT, "אפשר לקבוע ל 12/05/2024? כתבו ל dana@example.com"
        )
    )

    insights = asyncio.run(
        harness.service.analyze_conversation(conversation.id, annotate=True)
    )

    assert insights.language == "he"
    assert insights.message_count == 4
    assert len(insights.sentiment_breakdown) == 2
    assert insights.overall_sentiment in {"positive", "neutral"}
    assert insights.entities["DATE"] == ["12/05/2024"]
    assert insights.entities["EMAIL"] == ["dana@example.com"]
    stored = asyncio.run(harness.store.get_conversation(conversation.id))
    assert stored.metadata["analysis"]["conversation_id"] == conversation.id
