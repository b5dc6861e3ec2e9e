"""Pydantic schemas for conversation APIs and stores."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import ConversationStatus, MessageRole


class Conversation(BaseModel):
    id: str
    agent_id: str
    channel: str = "web"
    status: ConversationStatus = ConversationStatus.ACTIVE
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    ended_at: datetime | None = None


class Message(BaseModel):
    id: int
    conversation_id: str
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ConversationDetail(Conversation):
    messages: list[Message] = Field(default_factory=list)


class ConversationStart(BaseModel):
    agent_id: str = Field(min_length=1)
    channel: str = "web"
    metadata: dict[str, Any] = Field(default_factory=dict)


class TurnRequest(BaseModel):
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class TurnResponse(BaseModel):
    conversation_id: str
    content: str
    confidence: float
    suggested_actions: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TurnQueued(BaseModel):
    work_id: str
    conversation_id: str
    status: str


class StatusChangeRequest(BaseModel):
    reason: str | None = None
    actor: str | None = None


class TransferRequest(StatusChangeRequest):
    pass


class SentimentBreakdown(BaseModel):
    message_id: int
    score: float
    label: str


class ConversationInsights(BaseModel):
    conversation_id: str
    language: str
    overall_sentiment: str
    average_score: float
    sentiment_breakdown: list[SentimentBreakdown] = Field(default_factory=list)
    entities: dict[str, list[str]] = Field(default_factory=dict)
    message_count: int = 0
    analyzed_at: datetime


class DocumentIngestRequest(BaseModel):
    document_id: str | None = None
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DocumentIngestAccepted(BaseModel):
    work_id: str
    document_id: str
    status: str
