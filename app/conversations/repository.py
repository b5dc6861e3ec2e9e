"""Durable storage for conversations and their messages."""
from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

from psycopg.types.json import Jsonb

from ..core.db import connect
from . import schemas
from .errors import ConversationNotActiveError, ConversationNotFoundError
from .models import ConversationStatus, NewMessage, can_transition


class MessageStore(Protocol):
    """Abstraction for persisting conversations and ordered messages."""

    async def create_conversation(
        self,
        agent_id: str,
        channel: str = "web",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation: ...

    async def get_conversation(
        self, conversation_id: str
    ) -> Optional[schemas.Conversation]: ...

    async def list_messages(self, conversation_id: str) -> List[schemas.Message]: ...

    async def read_recent_history(
        self, conversation_id: str, limit: int
    ) -> List[schemas.Message]: ...

    async def append_turn(
        self,
        conversation_id: str,
        user_message: NewMessage,
        assistant_message: NewMessage,
    ) -> tuple[schemas.Message, schemas.Message]:
        """Persist both messages or neither; the conversation must be active."""
        ...

    async def update_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        note: Optional[NewMessage] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        """Append ``note`` and move to ``status`` in one operation."""
        ...

    async def annotate_conversation(
        self, conversation_id: str, metadata: Dict[str, Any]
    ) -> schemas.Conversation: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_transition(
    conversation: schemas.Conversation, status: ConversationStatus
) -> None:
    if not can_transition(conversation.status, status):
        raise ConversationNotActiveError(
            f"Cannot move conversation from {conversation.status.value} to {status.value}",
            conversation_id=conversation.id,
        )


class InMemoryConversationRepository:
    """In-memory store used for development and tests.

    Every mutation runs under one lock without suspending in between, so a
    turn's two messages always land together.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, schemas.Conversation] = {}
        self._messages: Dict[str, List[schemas.Message]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    def _require(self, conversation_id: str) -> schemas.Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return conversation

    def _build_message(self, conversation_id: str, message: NewMessage) -> schemas.Message:
        return schemas.Message(
            id=next(self._ids),
            conversation_id=conversation_id,
            role=message.role,
            content=message.content,
            metadata=dict(message.metadata),
            created_at=message.created_at or _now(),
        )

    async def create_conversation(
        self,
        agent_id: str,
        channel: str = "web",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        conversation = schemas.Conversation(
            id=str(uuid4()),
            agent_id=agent_id,
            channel=channel,
            status=ConversationStatus.ACTIVE,
            metadata=dict(metadata or {}),
            started_at=_now(),
        )
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation.model_copy(deep=True)

    async def get_conversation(
        self, conversation_id: str
    ) -> Optional[schemas.Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def list_messages(self, conversation_id: str) -> List[schemas.Message]:
        return [m.model_copy(deep=True) for m in self._messages.get(conversation_id, [])]

    async def read_recent_history(
        self, conversation_id: str, limit: int
    ) -> List[schemas.Message]:
        if limit <= 0:
            return []
        messages = self._messages.get(conversation_id, [])
        return [m.model_copy(deep=True) for m in messages[-limit:]]

    async def append_turn(
        self,
        conversation_id: str,
        user_message: NewMessage,
        assistant_message: NewMessage,
    ) -> tuple[schemas.Message, schemas.Message]:
        async with self._lock:
            conversation = self._require(conversation_id)
            if conversation.status is not ConversationStatus.ACTIVE:
                raise ConversationNotActiveError(
                    f"Conversation {conversation_id} is {conversation.status.value}",
                    conversation_id=conversation_id,
                )
            user = self._build_message(conversation_id, user_message)
            assistant = self._build_message(conversation_id, assistant_message)
            self._messages[conversation_id].extend([user, assistant])
        return user.model_copy(deep=True), assistant.model_copy(deep=True)

    async def update_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        note: Optional[NewMessage] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        async with self._lock:
            conversation = self._require(conversation_id)
            _check_transition(conversation, status)
            if note is not None:
                self._messages[conversation_id].append(
                    self._build_message(conversation_id, note)
                )
            merged = {**conversation.metadata, **(metadata or {})}
            updated = conversation.model_copy(
                update={
                    "status": status,
                    "metadata": merged,
                    "ended_at": _now() if status.is_terminal else conversation.ended_at,
                }
            )
            self._conversations[conversation_id] = updated
        return updated.model_copy(deep=True)

    async def annotate_conversation(
        self, conversation_id: str, metadata: Dict[str, Any]
    ) -> schemas.Conversation:
        async with self._lock:
            conversation = self._require(conversation_id)
            updated = conversation.model_copy(
                update={"metadata": {**conversation.metadata, **metadata}}
            )
            self._conversations[conversation_id] = updated
        return updated.model_copy(deep=True)


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`MessageStore`.

    Each call opens its own connection; multi-statement writes run in one
    transaction and lock the conversation row with ``FOR UPDATE``.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    # Utility -----------------------------------------------------------------
    @staticmethod
    async def _lock_conversation(cur, conversation_id: str) -> schemas.Conversation:
        await cur.execute(
            "SELECT * FROM conversations WHERE id = %s FOR UPDATE",
            (conversation_id,),
        )
        row = await cur.fetchone()
        if not row:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return schemas.Conversation(**row)

    @staticmethod
    async def _insert_message(
        cur, conversation_id: str, message: NewMessage
    ) -> schemas.Message:
        await cur.execute(
            """
            INSERT INTO conversation_messages (conversation_id, role, content, metadata, created_at)
            VALUES (%s, %s, %s, %s, coalesce(%s::timestamptz, now()))
            RETURNING *
            """,
            (
                conversation_id,
                message.role.value,
                message.content,
                Jsonb(message.metadata),
                message.created_at,
            ),
        )
        row = await cur.fetchone()
        return schemas.Message(**row)

    # Conversation operations --------------------------------------------------
    async def create_conversation(
        self,
        agent_id: str,
        channel: str = "web",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO conversations (id, agent_id, channel, status, metadata)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid4()),
                        agent_id,
                        channel,
                        ConversationStatus.ACTIVE.value,
                        Jsonb(metadata or {}),
                    ),
                )
                row = await cur.fetchone()
        return schemas.Conversation(**row)

    async def get_conversation(
        self, conversation_id: str
    ) -> Optional[schemas.Conversation]:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM conversations WHERE id = %s", (conversation_id,)
                )
                row = await cur.fetchone()
        return schemas.Conversation(**row) if row else None

    async def list_messages(self, conversation_id: str) -> List[schemas.Message]:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT * FROM conversation_messages
                    WHERE conversation_id = %s
                    ORDER BY id ASC
                    """,
                    (conversation_id,),
                )
                rows = await cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    async def read_recent_history(
        self, conversation_id: str, limit: int
    ) -> List[schemas.Message]:
        if limit <= 0:
            return []
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM conversation_messages
                        WHERE conversation_id = %s
                        ORDER BY id DESC
                        LIMIT %s
                    ) AS recent
                    ORDER BY id ASC
                    """,
                    (conversation_id, limit),
                )
                rows = await cur.fetchall()
        return [schemas.Message(**row) for row in rows]

    async def append_turn(
        self,
        conversation_id: str,
        user_message: NewMessage,
        assistant_message: NewMessage,
    ) -> tuple[schemas.Message, schemas.Message]:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                conversation = await self._lock_conversation(cur, conversation_id)
                if conversation.status is not ConversationStatus.ACTIVE:
                    raise ConversationNotActiveError(
                        f"Conversation {conversation_id} is {conversation.status.value}",
                        conversation_id=conversation_id,
                    )
                user = await self._insert_message(cur, conversation_id, user_message)
                assistant = await self._insert_message(
                    cur, conversation_id, assistant_message
                )
        return user, assistant

    async def update_conversation_status(
        self,
        conversation_id: str,
        status: ConversationStatus,
        note: Optional[NewMessage] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.Conversation:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                conversation = await self._lock_conversation(cur, conversation_id)
                _check_transition(conversation, status)
                if note is not None:
                    await self._insert_message(cur, conversation_id, note)
                await cur.execute(
                    """
                    UPDATE conversations
                    SET status = %s,
                        metadata = metadata || %s,
                        ended_at = CASE WHEN %s THEN now() ELSE ended_at END
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        status.value,
                        Jsonb(metadata or {}),
                        status.is_terminal,
                        conversation_id,
                    ),
                )
                row = await cur.fetchone()
        return schemas.Conversation(**row)

    async def annotate_conversation(
        self, conversation_id: str, metadata: Dict[str, Any]
    ) -> schemas.Conversation:
        async with connect(self._dsn) as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE conversations SET metadata = metadata || %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (Jsonb(metadata), conversation_id),
                )
                row = await cur.fetchone()
        if not row:
            raise ConversationNotFoundError(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return schemas.Conversation(**row)


__all__ = [
    "InMemoryConversationRepository",
    "MessageStore",
    "PostgresConversationRepository",
]
