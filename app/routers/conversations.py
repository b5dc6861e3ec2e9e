"""Conversation API routes: lifecycle, turns and live events."""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket
from fastapi.websockets import WebSocketDisconnect

from ..conversations import schemas as convo_schemas
from ..conversations.errors import (
    ConversationError,
    ConversationNotActiveError,
    ConversationNotFoundError,
    InvalidTurnError,
)
from ..conversations.models import ConversationStatus
from ..core.bootstrap import Pipeline, PipelineState
from ..core.rate_limit import chat_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or pipeline.state is not PipelineState.READY:
        raise HTTPException(
            status_code=503,
            detail={"kind": "retry_later", "message": "Pipeline is not ready"},
        )
    return pipeline


@contextmanager
def _service_errors() -> Iterator[None]:
    try:
        yield
    except ConversationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.as_dict()) from exc


@router.post(
    "/api/conversations",
    response_model=convo_schemas.Conversation,
    status_code=201,
)
async def start_conversation(
    payload: convo_schemas.ConversationStart,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.Conversation:
    with _service_errors():
        return await pipeline.service.start_conversation(
            payload.agent_id, channel=payload.channel, metadata=payload.metadata
        )


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
async def get_conversation(
    conversation_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.ConversationDetail:
    with _service_errors():
        return await pipeline.service.get_conversation(conversation_id)


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=convo_schemas.TurnResponse,
)
@limiter.limit(chat_rate_limit)
async def send_message(
    request: Request,
    conversation_id: str,
    payload: convo_schemas.TurnRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.TurnResponse:
    """Process one user turn and return the assistant reply."""
    with _service_errors():
        conversation = await pipeline.service.require_conversation(conversation_id)
        agent_config = pipeline.agents.get(conversation.agent_id)
        result = await pipeline.service.process_turn(
            conversation_id, agent_config, payload.content, payload.metadata
        )
    return convo_schemas.TurnResponse(
        conversation_id=conversation_id,
        content=result.content,
        confidence=result.confidence,
        suggested_actions=result.suggested_actions,
        metadata=result.metadata,
    )


@router.post(
    "/api/conversations/{conversation_id}/messages/queued",
    response_model=convo_schemas.TurnQueued,
    status_code=202,
)
@limiter.limit(chat_rate_limit)
async def queue_message(
    request: Request,
    conversation_id: str,
    payload: convo_schemas.TurnRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.TurnQueued:
    """Accept a user turn for background processing; the reply arrives as events."""
    with _service_errors():
        if not payload.content.strip():
            raise InvalidTurnError(
                "Message content must not be empty", conversation_id=conversation_id
            )
        conversation = await pipeline.service.require_conversation(conversation_id)
        if conversation.status is not ConversationStatus.ACTIVE:
            raise ConversationNotActiveError(
                f"Conversation {conversation_id} is {conversation.status.value}",
                conversation_id=conversation_id,
            )
    item = await pipeline.enqueue_message(
        conversation_id, payload.content, payload.metadata
    )
    return convo_schemas.TurnQueued(
        work_id=str(item.id), conversation_id=conversation_id, status=item.status.value
    )


@router.put(
    "/api/conversations/{conversation_id}/end",
    response_model=convo_schemas.Conversation,
)
async def end_conversation(
    conversation_id: str,
    payload: convo_schemas.StatusChangeRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.Conversation:
    payload = payload or convo_schemas.StatusChangeRequest()
    with _service_errors():
        conversation = await pipeline.service.end_conversation(
            conversation_id, reason=payload.reason, actor=payload.actor
        )
    try:
        await pipeline.enqueue_analysis(conversation_id)
    except Exception:
        logger.warning(
            "Could not schedule analysis for %s", conversation_id, exc_info=True
        )
    return conversation


@router.put(
    "/api/conversations/{conversation_id}/transfer",
    response_model=convo_schemas.Conversation,
)
async def transfer_conversation(
    conversation_id: str,
    payload: convo_schemas.TransferRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.Conversation:
    payload = payload or convo_schemas.TransferRequest()
    with _service_errors():
        return await pipeline.service.transfer_conversation(
            conversation_id, reason=payload.reason, actor=payload.actor
        )


@router.put(
    "/api/conversations/{conversation_id}/pause",
    response_model=convo_schemas.Conversation,
)
async def pause_conversation(
    conversation_id: str,
    payload: convo_schemas.StatusChangeRequest | None = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.Conversation:
    payload = payload or convo_schemas.StatusChangeRequest()
    with _service_errors():
        return await pipeline.service.pause_conversation(
            conversation_id, reason=payload.reason, actor=payload.actor
        )


@router.get(
    "/api/conversations/{conversation_id}/analysis",
    response_model=convo_schemas.ConversationInsights,
)
async def analyze_conversation(
    conversation_id: str,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.ConversationInsights:
    with _service_errors():
        return await pipeline.service.analyze_conversation(conversation_id)


@router.websocket("/ws/conversations/{conversation_id}")
async def conversation_events(websocket: WebSocket, conversation_id: str) -> None:
    """Stream pipeline events for one conversation until the client leaves."""
    pipeline = getattr(websocket.app.state, "pipeline", None)
    if pipeline is None or pipeline.state is not PipelineState.READY:
        await websocket.close(code=1013)
        return
    try:
        await pipeline.service.require_conversation(conversation_id)
    except ConversationNotFoundError:
        await websocket.close(code=4404)
        return
    except ConversationError:
        logger.warning(
            "Could not load conversation for event stream",
            exc_info=True,
            extra={"conversation_id": conversation_id},
        )
        await websocket.close(code=1011)
        return

    queue = pipeline.broker.subscribe(conversation_id)
    await websocket.accept()

    async def forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event)

    sender = asyncio.create_task(forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.warning(
                "Event forwarder failed",
                exc_info=True,
                extra={"conversation_id": conversation_id},
            )
        pipeline.broker.unsubscribe(conversation_id, queue)
