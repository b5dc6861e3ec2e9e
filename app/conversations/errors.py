"""Errors surfaced by the conversation service."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    RETRY_LATER = "retry_later"
    CONVERSATION_UNAVAILABLE = "conversation_unavailable"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"


class ConversationError(RuntimeError):
    """Base class; ``kind`` and ``status_code`` drive the HTTP mapping."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(self, message: str, *, conversation_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.conversation_id:
            payload["conversation_id"] = self.conversation_id
        return payload


class InvalidTurnError(ConversationError):
    kind = ErrorKind.INVALID_REQUEST
    status_code = 400


class ConversationNotFoundError(ConversationError):
    kind = ErrorKind.CONVERSATION_UNAVAILABLE
    status_code = 404


class ConversationNotActiveError(ConversationError):
    kind = ErrorKind.CONVERSATION_UNAVAILABLE
    status_code = 409


class ModelUnavailableError(ConversationError):
    """Model retries were exhausted or the turn deadline passed."""

    kind = ErrorKind.RETRY_LATER
    status_code = 503


class TurnFailedError(ConversationError):
    """The model rejected the request in a way retries cannot fix."""

    kind = ErrorKind.INTERNAL
    status_code = 500


class TurnPersistenceError(ConversationError):
    kind = ErrorKind.INTERNAL
    status_code = 500


__all__ = [
    "ConversationError",
    "ConversationNotActiveError",
    "ConversationNotFoundError",
    "ErrorKind",
    "InvalidTurnError",
    "ModelUnavailableError",
    "TurnFailedError",
    "TurnPersistenceError",
]
