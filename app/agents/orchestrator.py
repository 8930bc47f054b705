# =============================================================================
# LangGraph Orchestrator - Segmented Agentic Search
# =============================================================================
#
# Wires the three engine steps into a LangGraph StateGraph:
#
#   START ──▶ segment ──▶ execute ──▶ synthesize ──▶ END
#
#   segment    - Segmenter: query → segments + execution graph (cached)
#   execute    - StageScheduler: stages in order, bounded fan-out,
#                escalation per segment, deadline cancellation
#   synthesize - Synthesizer: one answer, sources, aggregate confidence
#
# DESIGN DECISION: Linear graph (no conditional edges).
# Every step always runs. Degradation happens INSIDE the nodes (fallback
# segmentation, failed segments, fallback synthesis), so the graph stays
# a straight line and there is always an answer at the end.
#
# DESIGN DECISION: Collaborators travel in the state.
# The model provider, cache and persistence sink are put into the state
# by run_agentic_search(). Nodes never reach for globals, so tests can
# run the whole graph on in-memory fakes.
# NOTE: Not JSON-serialisable. Safe as long as no checkpointer is
# configured on the graph (current: no checkpointer).
#
# DESIGN DECISION: Graph compiled once at module level.
# =============================================================================

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.runner import SegmentRunner
from app.agents.scheduler import ExecutionReport, StageScheduler
from app.agents.segmenter import SegmentationResult, Segmenter
from app.agents.synthesizer import Synthesizer
from app.agents.types import CoordinationEvent, SegmentResult, SynthesizedAnswer
from app.config import settings
from app.services.cache import Cache, get_cache
from app.services.llm import LLMProvider, ModelConfig, create_provider, get_llm_provider
from app.services.persistence import PersistenceSink, get_sink, record_safely

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = object()


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchMetrics:
    """Run-level numbers reported with every search."""

    total_execution_time_ms: int = 0
    total_tokens: int = 0
    cache_hits: int = 0
    stages_executed: int = 0
    cancelled: bool = False
    segment_count: int = 0
    successful_segments: int = 0
    escalated_segments: int = 0
    coordination_events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_execution_time_ms": self.total_execution_time_ms,
            "total_tokens": self.total_tokens,
            "cache_hits": self.cache_hits,
            "stages_executed": self.stages_executed,
            "cancelled": self.cancelled,
            "segment_count": self.segment_count,
            "successful_segments": self.successful_segments,
            "escalated_segments": self.escalated_segments,
            "coordination_events": self.coordination_events,
        }


@dataclass
class AgenticSearchResult:
    """What run_agentic_search hands back to the API layer."""

    search_id: str
    segmentation: SegmentationResult
    segment_results: list[SegmentResult]
    final_answer: SynthesizedAnswer
    metrics: SearchMetrics
    coordination_events: list[CoordinationEvent] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Agent State Schema
# ---------------------------------------------------------------------------


class AgentState(TypedDict, total=False):
    """
    State that flows through the LangGraph graph.

    Uses total=False so nodes only need to return the keys they update.
    """

    # --- Input (set by caller) ---
    search_id: str
    user_id: str
    query: str
    use_cache: bool
    max_stages: int | None
    timeout_seconds: float | None
    started_at: float

    # --- Collaborators (set by caller) ---
    llm: LLMProvider
    cache: Cache | None
    sink: PersistenceSink | None

    # --- Intermediate (set by nodes) ---
    segmentation: SegmentationResult
    report: ExecutionReport

    # --- Output (set by synthesize node) ---
    final_answer: SynthesizedAnswer
    metrics: SearchMetrics


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def segment_node(state: AgentState) -> dict:
    """
    Decompose the query (or load the cached decomposition).

    A ProviderError here is the one failure that aborts the search.
    """
    segmenter = Segmenter(cache=state.get("cache"))
    segmentation = await segmenter.segment(
        state["query"], state["llm"], use_cache=state.get("use_cache", True),
    )

    sink = state.get("sink")
    if sink is not None:
        await record_safely(
            sink.record_segmentation(
                segmentation.fingerprint,
                segmentation.segments,
                segmentation.graph,
                cached=segmentation.cached,
                fallback=segmentation.fallback,
                search_id=state["search_id"],
            ),
            "segmentation",
        )

    return {"segmentation": segmentation}


async def execute_node(state: AgentState) -> dict:
    """Run every stage of the execution graph."""
    segmentation: SegmentationResult = state["segmentation"]
    sink = state.get("sink")

    runner = SegmentRunner(
        segmentation.fingerprint,
        query=state["query"],
        sink=sink,
        cache=state.get("cache"),
        use_cache=state.get("use_cache", True),
        search_id=state["search_id"],
    )
    scheduler = StageScheduler(runner, sink=sink, search_id=state["search_id"])
    report = await scheduler.execute(
        segmentation.segments,
        segmentation.graph,
        state["llm"],
        max_stages=state.get("max_stages"),
        timeout_seconds=state.get("timeout_seconds"),
    )

    logger.info(
        "Execution complete: %d/%d stages, %d cache hit(s), cancelled=%s",
        report.stages_executed, segmentation.graph.stage_count,
        report.cache_hits, report.cancelled,
    )
    return {"report": report}


async def synthesize_node(state: AgentState) -> dict:
    """Combine results into the final answer and record the search."""
    segmentation: SegmentationResult = state["segmentation"]
    report: ExecutionReport = state["report"]
    results = report.ordered(segmentation.segments)

    answer = await Synthesizer().synthesize(
        results, segmentation.segments, state["query"], state["llm"],
    )

    metrics = SearchMetrics(
        total_execution_time_ms=int(
            (time.perf_counter() - state["started_at"]) * 1000
        ),
        total_tokens=(
            segmentation.tokens_used + report.total_tokens + answer.tokens_used
        ),
        cache_hits=report.cache_hits,
        stages_executed=report.stages_executed,
        cancelled=report.cancelled,
        segment_count=len(segmentation.segments),
        successful_segments=sum(1 for r in results if r.success),
        escalated_segments=sum(1 for r in results if r.was_escalated),
        coordination_events=len(report.coordination_events),
    )

    sink = state.get("sink")
    if sink is not None:
        await record_safely(
            sink.record_synthesis(
                segmentation.fingerprint,
                answer,
                user_id=state["user_id"],
                query_text=state["query"],
                metrics=metrics.to_dict(),
                search_id=state["search_id"],
            ),
            "synthesis",
        )

    return {"final_answer": answer, "metrics": metrics}


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(AgentState)
_builder.add_node("segment", segment_node)
_builder.add_node("execute", execute_node)
_builder.add_node("synthesize", synthesize_node)

_builder.add_edge(START, "segment")
_builder.add_edge("segment", "execute")
_builder.add_edge("execute", "synthesize")
_builder.add_edge("synthesize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_agentic_search(
    user_id: str,
    query_text: str,
    model_config: ModelConfig | None = None,
    *,
    use_cache: bool = True,
    max_stages: int | None = None,
    llm: LLMProvider | None = None,
    cache: Cache | None = None,
    sink: PersistenceSink | None = None,
    timeout_seconds: Any = _DEFAULT_TIMEOUT,
) -> AgenticSearchResult:
    """
    Entry point: segment, execute and synthesize one query.

    Args:
        user_id: Owner of the search (history is per user).
        query_text: The natural-language query.
        model_config: Model to use. Ignored when `llm` is given; the
            configured default provider is used when both are None.
        use_cache: Read cached segmentations and segment results.
        max_stages: Execute at most this many stages.
        llm: Pre-built provider (tests, callers that already resolved one).
        cache: Cache collaborator (default: get_cache()).
        sink: Persistence collaborator (default: get_sink()).
        timeout_seconds: Execution deadline. None disables it; the
            default comes from settings.search_timeout_seconds.

    Raises:
        ValueError: The provider cannot be configured.
        ProviderError: The decomposition call failed.
    """
    if llm is None:
        llm = create_provider(model_config) if model_config else get_llm_provider()
    if cache is None:
        cache = get_cache()
    if sink is None:
        sink = get_sink()
    if timeout_seconds is _DEFAULT_TIMEOUT:
        timeout_seconds = settings.search_timeout_seconds

    search_id = uuid.uuid4().hex
    initial_state: AgentState = {
        "search_id": search_id,
        "user_id": user_id,
        "query": query_text,
        "use_cache": use_cache,
        "max_stages": max_stages,
        "timeout_seconds": timeout_seconds,
        "started_at": time.perf_counter(),
        "llm": llm,
        "cache": cache,
        "sink": sink,
    }

    logger.info(
        "Invoking search graph: search_id=%s user=%s model=%s query='%s'",
        search_id, user_id, llm.model_id, query_text[:80],
    )

    result = await graph.ainvoke(initial_state)

    segmentation: SegmentationResult = result["segmentation"]
    report: ExecutionReport = result["report"]
    metrics: SearchMetrics = result["metrics"]

    logger.info(
        "Search graph complete: search_id=%s confidence=%.2f tokens=%d "
        "time=%dms",
        search_id, result["final_answer"].confidence,
        metrics.total_tokens, metrics.total_execution_time_ms,
    )

    return AgenticSearchResult(
        search_id=search_id,
        segmentation=segmentation,
        segment_results=report.ordered(segmentation.segments),
        final_answer=result["final_answer"],
        metrics=metrics,
        coordination_events=report.coordination_events,
    )


async def preview_segmentation(
    query_text: str,
    llm: LLMProvider,
    *,
    use_cache: bool = True,
    cache: Cache | None = None,
) -> SegmentationResult:
    """Segmentation only: the plan a search would execute."""
    return await Segmenter(cache=cache).segment(query_text, llm, use_cache=use_cache)
