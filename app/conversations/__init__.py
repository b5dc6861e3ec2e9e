"""Conversation domain: models, schemas, stores and the turn orchestrator."""

from . import schemas
from .models import (
    ALLOWED_TRANSITIONS,
    ConversationStatus,
    MessageRole,
    NewMessage,
    TurnResult,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ConversationStatus",
    "MessageRole",
    "NewMessage",
    "TurnResult",
    "can_transition",
    "schemas",
]
