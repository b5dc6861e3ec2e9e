"""Domain models used by the conversation service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"
    TRANSFERRED = "transferred"

    @property
    def is_terminal(self) -> bool:
        return self in (ConversationStatus.ENDED, ConversationStatus.TRANSFERRED)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    FUNCTION = "function"


ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset(
        {
            ConversationStatus.PAUSED,
            ConversationStatus.ENDED,
            ConversationStatus.TRANSFERRED,
        }
    ),
    ConversationStatus.PAUSED: frozenset(
        {ConversationStatus.ENDED, ConversationStatus.TRANSFERRED}
    ),
    ConversationStatus.ENDED: frozenset(),
    ConversationStatus.TRANSFERRED: frozenset(),
}


def can_transition(current: ConversationStatus, target: ConversationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[ConversationStatus(current)]


@dataclass
class NewMessage:
    """Message payload before the store assigns an id and timestamp."""

    role: MessageRole
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class TurnResult:
    """Post-processed assistant reply for one turn."""

    content: str
    confidence: float
    suggested_actions: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 < self.confidence <= 1:
            raise ValueError("confidence must be within (0, 1]")
