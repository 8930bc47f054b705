# =============================================================================
# History API - Past Searches
# =============================================================================
#
# GET /history            - a user's searches, newest first (paginated)
# GET /history/stats      - aggregate counts, optionally for one user
# GET /history/{id}       - one search with its segment execution attempts
#
# Reads go through the persistence sink, so the endpoints work the same
# against PostgreSQL and against the in-memory sink
# (persistence_enabled=False).
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_sink
from app.models.responses import (
    HistoryDetail,
    HistoryListResponse,
    HistoryStatsResponse,
)
from app.services.persistence import PersistenceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/history", tags=["History"])


@router.get(
    "",
    response_model=HistoryListResponse,
    summary="List a user's past searches",
)
async def list_history(
    user_id: str = Query(..., min_length=1, max_length=200),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sink=Depends(get_sink),
) -> HistoryListResponse:
    try:
        items = await sink.list_history(user_id, limit=limit, offset=offset)
    except PersistenceError as e:
        logger.error("History query failed: %s", e)
        raise HTTPException(status_code=503, detail="History unavailable") from e
    return HistoryListResponse(items=items, limit=limit, offset=offset)


# Declared before /{history_id} so "stats" is not parsed as an id
@router.get(
    "/stats",
    response_model=HistoryStatsResponse,
    summary="Aggregate search statistics",
)
async def history_stats(
    user_id: str | None = Query(default=None, max_length=200),
    sink=Depends(get_sink),
) -> HistoryStatsResponse:
    try:
        stats = await sink.history_stats(user_id)
    except PersistenceError as e:
        logger.error("History stats failed: %s", e)
        raise HTTPException(status_code=503, detail="History unavailable") from e
    return HistoryStatsResponse(**stats)


@router.get(
    "/{history_id}",
    response_model=HistoryDetail,
    summary="One past search with its segment executions",
)
async def get_history(
    history_id: int,
    sink=Depends(get_sink),
) -> HistoryDetail:
    try:
        entry = await sink.get_history(history_id)
    except PersistenceError as e:
        logger.error("History lookup failed: %s", e)
        raise HTTPException(status_code=503, detail="History unavailable") from e
    if entry is None:
        raise HTTPException(
            status_code=404,
            detail=f"Search {history_id} not found",
        )
    return HistoryDetail(**entry)
