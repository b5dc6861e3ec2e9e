"""Knowledge ingestion routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from ..conversations import schemas as convo_schemas
from ..core.bootstrap import Pipeline
from ..retrieval import IndexFilter
from .conversations import get_pipeline

router = APIRouter(tags=["knowledge"])


@router.post(
    "/api/agents/{agent_id}/documents",
    response_model=convo_schemas.DocumentIngestAccepted,
    status_code=202,
)
async def ingest_document(
    agent_id: str,
    payload: convo_schemas.DocumentIngestRequest,
    pipeline: Pipeline = Depends(get_pipeline),
) -> convo_schemas.DocumentIngestAccepted:
    """Queue a document for chunking and indexing under ``agent_id``."""
    item = await pipeline.enqueue_document(
        agent_id,
        payload.content,
        document_id=payload.document_id,
        metadata=payload.metadata,
    )
    return convo_schemas.DocumentIngestAccepted(
        work_id=str(item.id),
        document_id=item.payload["document_id"],
        status=item.status.value,
    )


@router.get("/api/agents/{agent_id}/knowledge")
async def knowledge_stats(
    agent_id: str, pipeline: Pipeline = Depends(get_pipeline)
) -> dict:
    return {
        "agent_id": agent_id,
        "chunks": await pipeline.index.count(IndexFilter(agent_id=agent_id)),
    }


@router.get("/api/work/{work_id}")
async def work_status(work_id: UUID, pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    item = await pipeline.queue.get(work_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Work item not found")
    return {
        "id": str(item.id),
        "kind": item.kind.value,
        "status": item.status.value,
        "attempts": item.attempts,
        "error": item.error,
    }
