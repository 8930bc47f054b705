# =============================================================================
# API Response Models - Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API. They
# mirror the engine dataclasses (app/agents/types.py) but are kept
# separate: the engine's types can change shape without breaking the
# public contract, and raw model output never leaks to clients.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health - confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    llm_provider: str
    cache_backend: str
    persistence_enabled: bool


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


class SegmentOut(BaseModel):
    id: str
    text: str
    type: str
    dependencies: list[str]
    priority: int
    estimated_complexity: str
    estimated_tokens: int


class ExecutionGraphOut(BaseModel):
    stages: list[list[str]]
    stage_count: int
    parallelizable: list[list[str]] = Field(
        description="Groups of segments that run concurrently.",
    )
    sequential: list[str] = Field(
        description="Segments that run alone in their stage.",
    )


class SegmentationResponse(BaseModel):
    """The decomposition of a query. Also returned by POST /search/segment."""

    fingerprint: str
    segments: list[SegmentOut]
    execution_graph: ExecutionGraphOut
    cached: bool
    fallback: bool = Field(
        description="True when decomposition failed and the whole query "
        "runs as one segment.",
    )
    tokens_used: int
    estimated_total_tokens: int
    estimated_time_ms: int


# ---------------------------------------------------------------------------
# Execution and synthesis
# ---------------------------------------------------------------------------


class FindingOut(BaseModel):
    fact: str
    source: str | None = None


class SegmentResultOut(BaseModel):
    segment_id: str
    success: bool
    confidence: float = Field(ge=0.0, le=1.0)
    findings: list[FindingOut]
    error: str | None = None
    tokens_used: int
    execution_time_ms: int
    was_escalated: bool
    coordination_events: int
    attempt: int
    cached: bool = False
    model: str | None = None


class CoordinationEventOut(BaseModel):
    consumer: str
    producer: str
    stage: int
    producer_confidence: float
    facts_shared: int


class SourceOut(BaseModel):
    reference: str
    title: str | None = None
    snippet: str | None = None


class SynthesizedAnswerOut(BaseModel):
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)
    model_confidence: float
    coverage: float = Field(
        description="Fraction of segments that succeeded.",
    )
    sources: list[SourceOut]
    key_points: list[str]
    fallback: str | None = Field(
        default=None,
        description="'unparsed' or 'provider_error' when synthesis degraded.",
    )


class SearchMetricsOut(BaseModel):
    total_execution_time_ms: int
    total_tokens: int
    cache_hits: int
    stages_executed: int
    cancelled: bool
    segment_count: int
    successful_segments: int
    escalated_segments: int
    coordination_events: int


class SearchResponse(BaseModel):
    """Response for POST /search."""

    search_id: str
    query: str
    model: str
    segmentation: SegmentationResponse
    segment_results: list[SegmentResultOut]
    final_answer: SynthesizedAnswerOut
    coordination_events: list[CoordinationEventOut]
    metrics: SearchMetricsOut


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class HistoryEntry(BaseModel):
    id: int
    search_id: str | None = None
    user_id: str
    query_text: str
    answer: str
    confidence: float
    model_confidence: float | None = None
    coverage: float | None = None
    sources: list[SourceOut] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list)
    fallback: str | None = None
    segment_count: int
    stage_count: int
    total_tokens: int
    execution_time_ms: int
    cache_hits: int
    cancelled: bool
    model: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ExecutionRecordOut(BaseModel):
    segment_id: str
    attempt: int
    success: bool
    confidence: float
    findings: list[FindingOut]
    error: str | None = None
    tokens_used: int
    execution_time_ms: int
    was_escalated: bool
    coordination_events: int
    model: str | None = None


class HistoryDetail(HistoryEntry):
    """One past search with every execution attempt of that run."""

    executions: list[ExecutionRecordOut] = Field(default_factory=list)


class HistoryListResponse(BaseModel):
    items: list[HistoryEntry]
    limit: int
    offset: int


class HistoryStatsResponse(BaseModel):
    total_searches: int
    avg_confidence: float | None = None
    total_tokens: int
    avg_execution_time_ms: int | None = None
    total_cache_hits: int
