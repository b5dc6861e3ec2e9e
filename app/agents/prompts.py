"""Prompt templates and chat message assembly."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from ..conversations.models import MessageRole
from ..nlp import TextAnalysis
from ..retrieval import ContextChunk
from .schemas import AgentConfig

logger = logging.getLogger(__name__)

HEBREW_INSTRUCTION = (
    "חשוב: המשתמש כותב בעברית. יש להשיב בעברית תקנית וברורה. "
    "שים לב לדקדוק נכון ולשימוש בסימני פיסוק מתאימים."
)
KNOWLEDGE_HEADER = "מידע רלוונטי מבסיס הידע:"

LANGUAGE_NAMES = {
    "he": "Hebrew",
    "en": "English",
    "ar": "Arabic",
    "ru": "Russian",
    "fr": "French",
    "es": "Spanish",
}

_REPLAYED_ROLES = (MessageRole.USER, MessageRole.ASSISTANT)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class HistoryEntry(Protocol):
    role: Any
    content: str


class PromptTemplateStore:
    """Resolve system prompt templates based on agent persona and provider."""

    _DEFAULT_TEMPLATES: Mapping[str, Mapping[str, str]] = {
        "general": {
            "default": "You are a helpful general-purpose assistant. Be concise and friendly.",
        },
        "support": {
            "default": "You are a customer support agent. Empathise, clarify the issue and provide steps to resolve it.",
        },
        "sales": {
            "default": "You are a persuasive sales assistant. Qualify the lead and highlight product value with warmth.",
        },
        "hr": {
            "default": "You are an HR assistant. Provide policy guidance with empathy and clarity.",
        },
    }

    def __init__(self, extra_templates: Mapping[str, Mapping[str, str]] | None = None):
        self._templates: dict[str, dict[str, str]] = {
            key: dict(value) for key, value in self._DEFAULT_TEMPLATES.items()
        }
        if extra_templates:
            for persona, mapping in extra_templates.items():
                merged = self._templates.setdefault(persona, {})
                merged.update(mapping)

    def resolve(
        self, persona: dict[str, Any] | None, provider: str, custom_template: str | None
    ) -> str:
        """Return the prompt template for the persona/provider combination."""

        if custom_template:
            return custom_template
        persona_type = str((persona or {}).get("type") or "general").lower()
        provider_key = provider.lower()
        persona_templates = self._templates.get(persona_type)
        if persona_templates:
            if provider_key in persona_templates:
                return persona_templates[provider_key]
            if "default" in persona_templates:
                return persona_templates["default"]
        fallback = self._templates["general"]
        return fallback.get(provider_key) or fallback["default"]

    def system_prompt(self, agent_config: AgentConfig) -> str:
        """Resolve the template and append persona traits."""

        base = self.resolve(
            agent_config.persona, agent_config.provider, agent_config.system_prompt
        )
        traits = ", ".join(
            f"{k}: {v}" for k, v in agent_config.persona.items() if k != "type"
        )
        if traits:
            return f"{base}\nPersona traits: {traits}"
        return base


class PromptAssembler:
    """Build the ordered message list sent to the chat model.

    The result is always one system message, then up to ``history_limit``
    prior user/assistant messages (oldest first), then the raw user input.
    When the total character count exceeds ``char_budget`` the oldest
    history entries are dropped; system and user messages are kept whole.
    """

    def __init__(
        self,
        templates: PromptTemplateStore | None = None,
        *,
        history_limit: int = 10,
        char_budget: int = 12000,
    ) -> None:
        self._templates = templates or PromptTemplateStore()
        self._history_limit = history_limit
        self._char_budget = char_budget

    def _system_message(
        self,
        agent_config: AgentConfig,
        analysis: TextAnalysis,
        context_chunks: Sequence[ContextChunk],
    ) -> ChatMessage:
        sections = [self._templates.system_prompt(agent_config)]
        if analysis.is_hebrew:
            sections.append(HEBREW_INSTRUCTION)
        elif agent_config.response_language:
            language = agent_config.response_language
            sections.append(f"Reply in {LANGUAGE_NAMES.get(language, language)}.")
        if context_chunks:
            knowledge = "\n\n".join(chunk.text for chunk in context_chunks)
            sections.append(f"{KNOWLEDGE_HEADER}\n<knowledge>\n{knowledge}\n</knowledge>")
        return ChatMessage(role=MessageRole.SYSTEM.value, content="\n\n".join(sections))

    def assemble(
        self,
        agent_config: AgentConfig,
        analysis: TextAnalysis,
        context_chunks: Sequence[ContextChunk],
        history: Sequence[HistoryEntry],
        user_input: str,
    ) -> list[ChatMessage]:
        system = self._system_message(agent_config, analysis, context_chunks)
        user = ChatMessage(role=MessageRole.USER.value, content=user_input)

        replayable = [
            ChatMessage(role=MessageRole(entry.role).value, content=entry.content)
            for entry in history
            if MessageRole(entry.role) in _REPLAYED_ROLES
        ]
        window = replayable[-self._history_limit :] if self._history_limit > 0 else []

        total = len(system.content) + len(user.content)
        total += sum(len(message.content) for message in window)
        dropped = 0
        while window and total > self._char_budget:
            total -= len(window[0].content)
            window = window[1:]
            dropped += 1
        if dropped:
            logger.info("Dropped %d history messages to fit the prompt budget", dropped)
        return [system, *window, user]


__all__ = [
    "ChatMessage",
    "HEBREW_INSTRUCTION",
    "KNOWLEDGE_HEADER",
    "PromptAssembler",
    "PromptTemplateStore",
]
