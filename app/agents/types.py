# =============================================================================
# Engine Types - Segments, Execution Graph, Results
# =============================================================================
#
# Plain dataclasses shared by the segmenter, scheduler, runner and
# synthesizer. These are the engine's internal currency; the API layer
# maps them to Pydantic response models and the persistence layer maps
# them to ORM rows.
#
# DESIGN DECISION: Tagged result variant.
# A segment either produced findings with a confidence (SegmentSuccess)
# or failed with a reason (SegmentFailure). SegmentResult wraps the
# outcome with execution metadata, so "a failed result with findings" is
# unrepresentable.
#
# DESIGN DECISION: Immutable segments and graph.
# Segment and ExecutionGraph are frozen. A failed segment is re-run
# (producing a new SegmentResult), never edited.
#
# Every type that travels through the cache has to_dict()/from_dict().
# =============================================================================

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Segment vocabulary
# ---------------------------------------------------------------------------

SEGMENT_TYPES = (
    "entity",
    "relation",
    "constraint",
    "intent",
    "context",
    "comparison",
    "synthesis",
)
DEFAULT_SEGMENT_TYPE = "context"

# Expected wall-clock per complexity class, used for the time estimate
COMPLEXITY_TIME_MS = {
    "tiny": 500,
    "small": 2000,
    "medium": 5000,
    "large": 15000,
}
DEFAULT_COMPLEXITY = "small"


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token, rounded up."""
    return math.ceil(len(text) / 4)


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Segment:
    """One independently answerable sub-question of a query."""

    id: str
    text: str
    type: str = DEFAULT_SEGMENT_TYPE
    dependencies: tuple[str, ...] = ()
    priority: int = 1  # 1 = highest, informational only
    estimated_complexity: str = DEFAULT_COMPLEXITY

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.type,
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "estimated_complexity": self.estimated_complexity,
            "estimated_tokens": self.estimated_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        return cls(
            id=data["id"],
            text=data["text"],
            type=data.get("type", DEFAULT_SEGMENT_TYPE),
            dependencies=tuple(data.get("dependencies", ())),
            priority=data.get("priority", 1),
            estimated_complexity=data.get(
                "estimated_complexity", DEFAULT_COMPLEXITY,
            ),
        )


@dataclass(frozen=True)
class ExecutionGraph:
    """
    Topological layering of the segment DAG.

    Stage k holds every segment whose dependencies all sit in stages
    < k. Each segment appears in exactly one stage.
    """

    stages: tuple[tuple[str, ...], ...]

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    @property
    def parallelizable(self) -> list[list[str]]:
        """Groups of segment ids that run together (stages with >1 member)."""
        return [list(stage) for stage in self.stages if len(stage) > 1]

    @property
    def sequential(self) -> list[str]:
        """Ids of segments that run alone in their stage."""
        return [stage[0] for stage in self.stages if len(stage) == 1]

    def stage_index(self, segment_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if segment_id in stage:
                return index
        raise KeyError(segment_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": [list(stage) for stage in self.stages],
            "stage_count": self.stage_count,
            "parallelizable": self.parallelizable,
            "sequential": self.sequential,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionGraph:
        return cls(stages=tuple(tuple(stage) for stage in data["stages"]))


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Finding:
    """An atomic fact and where it came from (None if uncited)."""

    fact: str
    source: str | None = None


@dataclass(frozen=True)
class SegmentFindings:
    """Ordered facts produced by one segment."""

    items: tuple[Finding, ...] = ()

    @property
    def facts(self) -> list[str]:
        return [f.fact for f in self.items]

    @property
    def sources(self) -> list[str]:
        """Cited sources, deduplicated, in first-seen order."""
        seen: set[str] = set()
        ordered = []
        for finding in self.items:
            if finding.source and finding.source not in seen:
                seen.add(finding.source)
                ordered.append(finding.source)
        return ordered

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)

    def to_list(self) -> list[dict[str, Any]]:
        return [{"fact": f.fact, "source": f.source} for f in self.items]

    @classmethod
    def from_list(cls, data: list[dict[str, Any]]) -> SegmentFindings:
        return cls(items=tuple(
            Finding(fact=item["fact"], source=item.get("source"))
            for item in data
        ))


# ---------------------------------------------------------------------------
# Segment Results (tagged variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SegmentSuccess:
    findings: SegmentFindings
    confidence: float


@dataclass(frozen=True)
class SegmentFailure:
    reason: str


@dataclass
class SegmentResult:
    """
    Output of one segment execution attempt.

    `attempt` is 1 for the initial call and 2 when the escalation
    attempt was the one kept. `coordination_events` counts the
    dependency outputs embedded in this segment's prompt.
    """

    segment_id: str
    outcome: SegmentSuccess | SegmentFailure
    tokens_used: int = 0
    execution_time_ms: int = 0
    was_escalated: bool = False
    coordination_events: int = 0
    attempt: int = 1
    model: str | None = None
    raw_output: str | None = None
    cached: bool = False

    @property
    def success(self) -> bool:
        return isinstance(self.outcome, SegmentSuccess)

    @property
    def confidence(self) -> float:
        if isinstance(self.outcome, SegmentSuccess):
            return self.outcome.confidence
        return 0.0

    @property
    def findings(self) -> SegmentFindings:
        if isinstance(self.outcome, SegmentSuccess):
            return self.outcome.findings
        return SegmentFindings()

    @property
    def error(self) -> str | None:
        if isinstance(self.outcome, SegmentFailure):
            return self.outcome.reason
        return None

    @classmethod
    def failed(cls, segment_id: str, reason: str, **kwargs: Any) -> SegmentResult:
        return cls(segment_id=segment_id, outcome=SegmentFailure(reason), **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segment_id": self.segment_id,
            "success": self.success,
            "confidence": self.confidence,
            "findings": self.findings.to_list(),
            "error": self.error,
            "tokens_used": self.tokens_used,
            "execution_time_ms": self.execution_time_ms,
            "was_escalated": self.was_escalated,
            "coordination_events": self.coordination_events,
            "attempt": self.attempt,
            "model": self.model,
            "raw_output": self.raw_output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentResult:
        if data["success"]:
            outcome: SegmentSuccess | SegmentFailure = SegmentSuccess(
                findings=SegmentFindings.from_list(data.get("findings", [])),
                confidence=data["confidence"],
            )
        else:
            outcome = SegmentFailure(reason=data.get("error") or "unknown")
        return cls(
            segment_id=data["segment_id"],
            outcome=outcome,
            tokens_used=data.get("tokens_used", 0),
            execution_time_ms=data.get("execution_time_ms", 0),
            was_escalated=data.get("was_escalated", False),
            coordination_events=data.get("coordination_events", 0),
            attempt=data.get("attempt", 1),
            model=data.get("model"),
            raw_output=data.get("raw_output"),
        )


# ---------------------------------------------------------------------------
# Coordination
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DependencyContext:
    """Read-only view of a dependency's output handed to a dependent."""

    segment_id: str
    text: str
    findings: SegmentFindings
    confidence: float


@dataclass(frozen=True)
class CoordinationEvent:
    """`consumer` embedded the findings of `producer` in its prompt."""

    consumer: str
    producer: str
    stage: int
    producer_confidence: float
    facts_shared: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "consumer": self.consumer,
            "producer": self.producer,
            "stage": self.stage,
            "producer_confidence": self.producer_confidence,
            "facts_shared": self.facts_shared,
        }


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Source:
    """
    A source attributed in the final answer.

    `reference` is the dedup key: a URL or a citation string.
    """

    reference: str
    title: str | None = None
    snippet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "title": self.title,
            "snippet": self.snippet,
        }


@dataclass
class SynthesizedAnswer:
    """
    Final answer for a query.

    `confidence` is the aggregate surfaced to the user. It blends
    `model_confidence` (self-reported by the synthesis call) with
    `coverage` (fraction of segments that succeeded).
    """

    answer: str
    confidence: float
    model_confidence: float
    coverage: float
    sources: list[Source] = field(default_factory=list)
    key_points: list[str] = field(default_factory=list)
    tokens_used: int = 0
    model: str | None = None
    fallback: str | None = None  # "unparsed" or "provider_error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "model_confidence": self.model_confidence,
            "coverage": self.coverage,
            "sources": [s.to_dict() for s in self.sources],
            "key_points": list(self.key_points),
            "tokens_used": self.tokens_used,
            "model": self.model,
            "fallback": self.fallback,
        }
