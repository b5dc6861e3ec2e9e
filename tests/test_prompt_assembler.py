from app.agents.prompts import (
    HEBREW_INSTRUCTION,
    KNOWLEDGE_HEADER,
    PromptAssembler,
    PromptTemplateStore,
)
from app.agents.schemas import AgentConfig
from app.conversations.models import MessageRole, NewMessage
from app.nlp import TextAnalyzer
from app.retrieval import ContextChunk


def _history(*pairs):
    return [NewMessage(role=role, content=content) for role, content in pairs]


def test_hebrew_turn_gets_instruction_and_knowledge():
    analysis = TextAnalyzer().analyze("מה שעות הפתיחה?")
    chunks = [
        ContextChunk(text="הסניף פתוח 9-17", document_id="hours", score=0.9),
        ContextChunk(text="בשישי עד 13", document_id="hours", score=0.8),
    ]

    messages = PromptAssembler().assemble(
        AgentConfig(), analysis, chunks, [], "מה שעות הפתיחה?"
    )

    assert [m.role for m in messages] == ["system", "user"]
    system = messages[0].content
    assert HEBREW_INSTRUCTION in system
    assert KNOWLEDGE_HEADER in system
    assert "<knowledge>\nהסניף פתוח 9-17\n\nבשישי עד 13\n</knowledge>" in system
    assert messages[-1].content == "מה שעות הפתיחה?"


def test_non_hebrew_turn_uses_response_language():
    analysis = TextAnalyzer().analyze("What are your opening hours today?")
    config = AgentConfig(response_language="en")

    system = PromptAssembler().assemble(config, analysis, [], [], "hours?")[0].content

    assert HEBREW_INSTRUCTION not in system
    assert "Reply in English." in system
    assert KNOWLEDGE_HEADER not in system


def test_default_agent_has_no_language_hint_for_english_input():
    analysis = TextAnalyzer().analyze("What are your opening hours today?")

    messages = PromptAssembler().assemble(AgentConfig(), analysis, [], [], "hours?")
    system = messages[0].content

    assert "Reply in" not in system
    assert HEBREW_INSTRUCTION not in system


def test_history_is_filtered_and_trimmed_to_limit():
    analysis = TextAnalyzer().analyze("שלום")
    history = _history(
        (MessageRole.USER, "1"),
        (MessageRole.ASSISTANT, "2"),
        (MessageRole.SYSTEM, "note"),
        (MessageRole.USER, "3"),
        (MessageRole.ASSISTANT, "4"),
    )

    messages = PromptAssembler(history_limit=3).assemble(
        AgentConfig(), analysis, [], history, "שלום"
    )

    assert [m.content for m in messages[1:-1]] == ["2", "3", "4"]
    assert [m.role for m in messages[1:-1]] == ["assistant", "user", "assistant"]


def test_char_budget_drops_oldest_history_first():
    analysis = TextAnalyzer().analyze("שלום")
    config = AgentConfig(system_prompt="S")
    history = _history(
        (MessageRole.USER, "a" * 50),
        (MessageRole.ASSISTANT, "b" * 50),
        (MessageRole.USER, "c" * 10),
    )
    assembler = PromptAssembler()
    system_len = len(assembler.assemble(config, analysis, [], [], "שלום")[0].content)
    assembler = PromptAssembler(char_budget=system_len + len("שלום") + 70)

    messages = assembler.assemble(config, analysis, [], history, "שלום")

    assert [m.content for m in messages[1:-1]] == ["b" * 50, "c" * 10]


def test_custom_system_prompt_and_persona_traits():
    config = AgentConfig(
        system_prompt="אתה נציג שירות של חברת חשמל.",
        persona={"type": "support", "tone": "warm"},
    )
    prompt = PromptTemplateStore().system_prompt(config)

    assert prompt.startswith("אתה נציג שירות של חברת חשמל.")
    assert "tone: warm" in prompt


def test_persona_template_falls_back_to_general():
    store = PromptTemplateStore()
    assert "customer support" in store.resolve({"type": "support"}, "openai", None)
    assert "general-purpose" in store.resolve({"type": "unknown"}, "openai", None)
