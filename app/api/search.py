# =============================================================================
# Search API - Segmented Agentic Search Endpoints
# =============================================================================
#
# POST /search          - full pipeline: segment → execute → synthesize
# POST /search/segment  - segmentation only (preview the execution plan)
#
# The heavy lifting happens in the agents package:
#   - segmenter.py decomposes the query into a segment DAG
#   - scheduler.py / runner.py execute stages with bounded concurrency
#   - synthesizer.py combines results into one answer
#
# This module only handles request validation, provider
# resolution, error mapping and response mapping.
#
# ERROR MAPPING:
#   ValueError     → 503 (provider cannot be configured)
#   ProviderError  → 502 (decomposition call failed)
#   everything else degrades inside the engine and returns 200
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.agents.orchestrator import (
    AgenticSearchResult,
    preview_segmentation,
    run_agentic_search,
)
from app.agents.segmenter import SegmentationResult
from app.api.deps import ProviderFactory, get_cache, get_provider_factory, get_sink
from app.models.requests import ModelSelection, SearchRequest, SegmentRequest
from app.models.responses import SearchResponse, SegmentationResponse
from app.services.cache import Cache
from app.services.llm import LLMProvider, ProviderError
from app.services.persistence import PersistenceSink

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


# ---------------------------------------------------------------------------
# POST /search - Run a segmented agentic search
# ---------------------------------------------------------------------------


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Run a segmented agentic search",
    description=(
        "Decompose the query into segments, execute them stage by stage "
        "with bounded concurrency (retrying low-confidence segments once), "
        "and synthesize a single answer with confidence and sources."
    ),
)
async def search_endpoint(
    request: SearchRequest,
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    cache: Cache = Depends(get_cache),
    sink: PersistenceSink = Depends(get_sink),
) -> SearchResponse:
    """
    Error handling:
    - Provider cannot be configured (missing key, unknown provider) → 503
    - Decomposition call failed → 502
    - Segment, synthesis, cache and persistence failures → 200 with a
      degraded answer
    """
    logger.info(
        "Search request: user=%s query='%s' use_cache=%s max_stages=%s",
        request.user_id, request.query[:80], request.use_cache,
        request.max_stages,
    )

    llm = _resolve_provider(provider_factory, request.model)

    try:
        result = await run_agentic_search(
            request.user_id,
            request.query,
            use_cache=request.use_cache,
            max_stages=request.max_stages,
            llm=llm,
            cache=cache,
            sink=sink,
        )
    except ProviderError as e:
        logger.error("Model unreachable during segmentation: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e

    return _to_search_response(request.query, llm, result)


# ---------------------------------------------------------------------------
# POST /search/segment - Segmentation preview
# ---------------------------------------------------------------------------


@router.post(
    "/search/segment",
    response_model=SegmentationResponse,
    summary="Preview how a query would be segmented",
)
async def segment_endpoint(
    request: SegmentRequest,
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    cache: Cache = Depends(get_cache),
) -> SegmentationResponse:
    llm = _resolve_provider(provider_factory, request.model)

    try:
        segmentation = await preview_segmentation(
            request.query, llm, use_cache=request.use_cache, cache=cache,
        )
    except ProviderError as e:
        logger.error("Model unreachable during segmentation: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e

    return _to_segmentation_response(segmentation)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _resolve_provider(
    provider_factory: ProviderFactory,
    selection: ModelSelection | None,
) -> LLMProvider:
    try:
        return provider_factory(selection)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e


def _to_segmentation_response(
    segmentation: SegmentationResult,
) -> SegmentationResponse:
    data = segmentation.to_dict()
    return SegmentationResponse(
        fingerprint=data["fingerprint"],
        segments=data["segments"],
        execution_graph=data["graph"],
        cached=data["cached"],
        fallback=data["fallback"],
        tokens_used=data["tokens_used"],
        estimated_total_tokens=data["estimated_total_tokens"],
        estimated_time_ms=data["estimated_time_ms"],
    )


def _to_search_response(
    query: str,
    llm: LLMProvider,
    result: AgenticSearchResult,
) -> SearchResponse:
    segment_results = []
    for r in result.segment_results:
        data = r.to_dict()
        data["cached"] = r.cached
        segment_results.append(data)

    return SearchResponse(
        search_id=result.search_id,
        query=query,
        model=llm.model_id,
        segmentation=_to_segmentation_response(result.segmentation),
        segment_results=segment_results,
        final_answer=result.final_answer.to_dict(),
        coordination_events=[e.to_dict() for e in result.coordination_events],
        metrics=result.metrics.to_dict(),
    )
