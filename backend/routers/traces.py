"""
Traces API router: batch span ingestion and trace retrieval.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from config import Settings
from dependencies import get_app_settings, get_redis
from models.trace import IngestResponse, Trace, TraceBatch, TraceSummary
from security import require_api_key
from services.redis_service import RedisService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/traces",
    tags=["traces"],
)


# ============ RESPONSE MODELS ============

class TraceListResponse(BaseModel):
    traces: list[TraceSummary]
    total: int
    offset: int
    limit: int


# ============ ENDPOINTS ============

@router.post("", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_spans(
    batch: TraceBatch,
    redis: RedisService = Depends(get_redis),
    settings: Settings = Depends(get_app_settings),
    _auth=Depends(require_api_key()),
):
    """
    Accept a batch of finished spans from an SDK.
    Spans are merged into their traces; re-sent spans replace earlier copies.
    """
    if len(batch.spans) > settings.max_batch_spans:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch exceeds {settings.max_batch_spans} spans",
        )

    trace_ids = await redis.ingest_spans(batch.spans, batch.resource)
    logger.info(
        "Ingested %d spans for %d traces (service=%s)",
        len(batch.spans), len(trace_ids), batch.resource.get("service_name", "-"),
    )
    return IngestResponse(accepted=len(batch.spans), traces=trace_ids)


@router.get("", response_model=TraceListResponse)
async def list_traces(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    redis: RedisService = Depends(get_redis),
    _auth=Depends(require_api_key()),
):
    """List trace summaries, newest first."""
    traces = await redis.list_traces(offset=offset, limit=limit)
    total = await redis.count_traces()

    return TraceListResponse(
        traces=[trace.summary() for trace in traces],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get("/{trace_id}", response_model=Trace)
async def get_trace(
    trace_id: str,
    redis: RedisService = Depends(get_redis),
    _auth=Depends(require_api_key()),
):
    """Get a trace with all of its spans"""
    trace = await redis.get_trace(trace_id)
    if not trace:
        raise HTTPException(status_code=404, detail="Trace not found")
    return trace


@router.get("/{trace_id}/tree")
async def get_trace_tree(
    trace_id: str,
    redis: RedisService = Depends(get_redis),
    _auth=Depends(require_api_key()),
):
    """Get trace as hierarchical span trees for visualization"""
    trace = await redis.get_trace(trace_id)
    if not trace:
        raise HTTPException(status_code=404, detail="Trace not found")

    return {
        "trace_id": trace_id,
        "name": trace.name,
        "tree": trace.get_span_tree(),
    }


@router.delete("/{trace_id}")
async def delete_trace(
    trace_id: str,
    redis: RedisService = Depends(get_redis),
    _auth=Depends(require_api_key()),
):
    """Delete a trace"""
    deleted = await redis.delete_trace(trace_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Trace not found")
    return {"message": "Trace deleted"}
