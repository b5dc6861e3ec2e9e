"""Data models for background work items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4


class WorkStatus(str, Enum):
    """Lifecycle status values for a work item."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkKind(str, Enum):
    DOCUMENT_PROCESSING = "document-processing"
    CONVERSATION_ANALYSIS = "conversation-analysis"
    MESSAGE_PROCESSING = "message-processing"


@dataclass
class WorkItem:
    kind: WorkKind
    payload: Dict[str, Any]
    id: UUID = field(default_factory=uuid4)
    status: WorkStatus = WorkStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 5
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WorkItem":
        return cls(
            id=row["id"],
            kind=WorkKind(row["kind"]),
            payload=dict(row.get("payload") or {}),
            status=WorkStatus(row["status"]),
            attempts=row.get("attempts", 0),
            max_attempts=row.get("max_attempts", 5),
            error=row.get("error"),
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class DocumentPayload:
    """Document-processing payload: index ``content`` for ``agent_id``."""

    agent_id: str
    document_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "document_id": self.document_id,
            "content": self.content,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class MessagePayload:
    """Message-processing payload: answer ``content`` in a conversation."""

    conversation_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "content": self.content,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessagePayload":
        return cls(
            conversation_id=data["conversation_id"],
            content=data["content"],
            metadata=dict(data.get("metadata") or {}),
        )


__all__ = ["DocumentPayload", "MessagePayload", "WorkItem", "WorkKind", "WorkStatus"]
