# =============================================================================
# Segmenter - Query Decomposition into a Segment DAG
# =============================================================================
#
# The first step of every search. A single model call breaks the user's
# query into atomic sub-questions ("segments") with declared
# dependencies, and the segments are layered into stages for the
# scheduler:
#
#   "Compare X and Y"
#       ├── s1: Find facts about X      (stage 0)
#       ├── s2: Find facts about Y      (stage 0)
#       └── s3: Compare X and Y  ← s1,s2 (stage 1)
#
# DESIGN DECISION: Never stall on bad decomposition.
# Malformed output (not JSON, unknown dependency ids, duplicate ids,
# cycles) raises SegmentationError internally, and the segmenter falls
# back to a one-segment plan containing the whole query. The only error
# that escapes is ProviderError: if the model cannot be reached at all,
# there is nothing to fall back on.
#
# DESIGN DECISION: Kahn layering with original-order tie-breaking.
# Each stage is "every remaining segment whose dependencies are all in
# earlier stages", listed in the order the model emitted them. Same
# segments, same graph, every time.
#
# DESIGN DECISION: Cache writes regardless of use_cache.
# use_cache only controls reads. A fresh decomposition is always stored
# (for segmentation_cache_ttl_seconds) so the next identical query can
# skip the call. Fallback plans are not cached; the next attempt
# deserves another shot at a real decomposition.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from app.agents.parsing import extract_json
from app.agents.types import (
    COMPLEXITY_TIME_MS,
    DEFAULT_COMPLEXITY,
    DEFAULT_SEGMENT_TYPE,
    SEGMENT_TYPES,
    ExecutionGraph,
    Segment,
)
from app.config import settings
from app.services.cache import (
    Cache,
    CacheError,
    CacheMiss,
    query_fingerprint,
    segmentation_key,
)
from app.services.llm import LLMProvider, ProviderError

logger = logging.getLogger(__name__)

FALLBACK_SEGMENT_ID = "whole-query"


class SegmentationError(Exception):
    """The decomposition could not be turned into a valid segment DAG."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SegmentationResult:
    """
    Segments of one query plus their execution graph.

    `fallback` is True when the decomposition failed and the plan is the
    single whole-query segment.
    """

    fingerprint: str
    segments: list[Segment]
    graph: ExecutionGraph
    cached: bool = False
    fallback: bool = False
    tokens_used: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def estimated_total_tokens(self) -> int:
        return sum(s.estimated_tokens for s in self.segments)

    @property
    def estimated_time_ms(self) -> int:
        """Sum over stages of the slowest member's expected time."""
        by_id = {s.id: s for s in self.segments}
        total = 0
        for stage in self.graph.stages:
            total += max(
                COMPLEXITY_TIME_MS.get(by_id[sid].estimated_complexity, 0)
                for sid in stage
            )
        return total

    def segment(self, segment_id: str) -> Segment:
        for seg in self.segments:
            if seg.id == segment_id:
                return seg
        raise KeyError(segment_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "segments": [s.to_dict() for s in self.segments],
            "graph": self.graph.to_dict(),
            "cached": self.cached,
            "fallback": self.fallback,
            "tokens_used": self.tokens_used,
            "estimated_total_tokens": self.estimated_total_tokens,
            "estimated_time_ms": self.estimated_time_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentationResult:
        return cls(
            fingerprint=data["fingerprint"],
            segments=[Segment.from_dict(s) for s in data["segments"]],
            graph=ExecutionGraph.from_dict(data["graph"]),
            cached=data.get("cached", False),
            fallback=data.get("fallback", False),
            tokens_used=data.get("tokens_used", 0),
        )


# ---------------------------------------------------------------------------
# Decomposition Prompt
# ---------------------------------------------------------------------------

SEGMENTATION_SYSTEM = """You are a query segmentation engine for an \
agentic search system.

Break the user's query into atomic, independently answerable \
sub-questions ("segments") and declare which segments depend on the \
output of others.

RULES:
1. Each segment must be answerable on its own once its dependencies \
are answered
2. Only declare a dependency when the segment genuinely needs that output
3. Dependencies must reference ids of other segments in the list, \
and must not form a cycle
4. priority: 1 = highest, 10 = lowest
5. type is one of: entity, relation, constraint, intent, context, \
comparison, synthesis
6. estimatedComplexity is one of: tiny (simple fact), small \
(straightforward analysis), medium (multi-step reasoning), large \
(complex synthesis)
7. Use as few segments as the query needs. A simple question is one \
segment.

Respond with ONLY valid JSON (no markdown, no explanation):
{
  "segments": [
    {"id": "1", "text": "Find the latest iPhone model", "type": "entity", \
"priority": 1, "dependencies": [], "estimatedComplexity": "tiny"},
    {"id": "2", "text": "Find the latest Samsung Galaxy model", \
"type": "entity", "priority": 1, "dependencies": [], \
"estimatedComplexity": "tiny"},
    {"id": "3", "text": "Compare their camera specs", "type": "comparison", \
"priority": 2, "dependencies": ["1", "2"], "estimatedComplexity": "small"}
  ]
}"""

SEGMENTATION_TEMPERATURE = 0.3


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Segmenter:
    """
    Turns a query into a SegmentationResult, consulting the cache.

    Args:
        cache: Cache collaborator. None disables caching entirely.
        ttl_seconds: Lifetime of cached segmentations.
        timeout_seconds: Ceiling for the decomposition call.
    """

    def __init__(
        self,
        cache: Cache | None = None,
        ttl_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._cache = cache
        self._ttl = (
            ttl_seconds if ttl_seconds is not None
            else settings.segmentation_cache_ttl_seconds
        )
        self._timeout = (
            timeout_seconds if timeout_seconds is not None
            else settings.segment_timeout_seconds
        )

    async def segment(
        self,
        query: str,
        llm: LLMProvider,
        use_cache: bool = True,
    ) -> SegmentationResult:
        """
        Decompose `query` into segments and an execution graph.

        Raises:
            ProviderError: the decomposition call itself failed.
        """
        fingerprint = query_fingerprint(query, llm.model_id)

        if use_cache:
            cached = await self._read_cache(fingerprint)
            if cached is not None:
                logger.info(
                    "Segmentation cache hit: %d segments, %d stages (fp=%s)",
                    len(cached.segments), cached.graph.stage_count,
                    fingerprint[:12],
                )
                return cached

        response = await self._call_model(query, llm)

        try:
            segments = parse_segments(response.content)
            graph = build_execution_graph(segments)
        except SegmentationError as e:
            logger.warning(
                "Segmentation failed (%s); falling back to a single "
                "whole-query segment",
                e,
            )
            result = fallback_segmentation(query, fingerprint)
            result.tokens_used = response.total_tokens
            result.errors.append(str(e))
            return result

        result = SegmentationResult(
            fingerprint=fingerprint,
            segments=segments,
            graph=graph,
            tokens_used=response.total_tokens,
        )
        logger.info(
            "Segmented query into %d segments across %d stages "
            "(parallel groups=%d, fp=%s)",
            len(segments), graph.stage_count,
            len(graph.parallelizable), fingerprint[:12],
        )

        await self._write_cache(result)
        return result

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _call_model(self, query: str, llm: LLMProvider):
        try:
            return await asyncio.wait_for(
                llm.complete(
                    messages=[{"role": "user", "content": f"Query: {query}"}],
                    system=SEGMENTATION_SYSTEM,
                    temperature=SEGMENTATION_TEMPERATURE,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Decomposition call timed out after {self._timeout}s"
            ) from e

    async def _read_cache(self, fingerprint: str) -> SegmentationResult | None:
        if self._cache is None:
            return None
        try:
            payload = await self._cache.get(segmentation_key(fingerprint))
        except CacheMiss:
            return None
        except CacheError as e:
            logger.warning("Segmentation cache read failed: %s", e)
            return None

        try:
            result = SegmentationResult.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cached segmentation: %s", e)
            return None
        result.cached = True
        result.tokens_used = 0
        return result

    async def _write_cache(self, result: SegmentationResult) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.put(
                segmentation_key(result.fingerprint),
                result.to_dict(),
                self._ttl,
            )
        except CacheError as e:
            logger.warning("Segmentation cache write failed: %s", e)


def fallback_segmentation(query: str, fingerprint: str) -> SegmentationResult:
    """One segment holding the whole query, in a single stage."""
    segment = Segment(
        id=FALLBACK_SEGMENT_ID,
        text=query,
        type=DEFAULT_SEGMENT_TYPE,
    )
    return SegmentationResult(
        fingerprint=fingerprint,
        segments=[segment],
        graph=ExecutionGraph(stages=((segment.id,),)),
        fallback=True,
    )


def parse_segments(content: str) -> list[Segment]:
    """
    Parse the decomposition reply into validated segments.

    Accepts {"segments": [...]} or a bare list. Rejects empty plans,
    duplicate ids, blank text, and dependencies on unknown or self ids.

    Raises:
        SegmentationError: the reply is not a usable plan.
    """
    try:
        payload = extract_json(content)
    except ValueError as e:
        raise SegmentationError(f"unparsable decomposition: {e}") from e

    raw_segments = payload.get("segments") if isinstance(payload, dict) else payload
    if not isinstance(raw_segments, list) or not raw_segments:
        raise SegmentationError("decomposition contains no segments")

    segments: list[Segment] = []
    seen_ids: set[str] = set()
    for index, raw in enumerate(raw_segments):
        if not isinstance(raw, dict):
            raise SegmentationError(f"segment #{index} is not an object")
        segment = _segment_from_raw(raw, index)
        if segment.id in seen_ids:
            raise SegmentationError(f"duplicate segment id '{segment.id}'")
        seen_ids.add(segment.id)
        segments.append(segment)

    for segment in segments:
        for dep in segment.dependencies:
            if dep == segment.id:
                raise SegmentationError(
                    f"segment '{segment.id}' depends on itself"
                )
            if dep not in seen_ids:
                raise SegmentationError(
                    f"segment '{segment.id}' depends on unknown "
                    f"segment '{dep}'"
                )

    return segments


def build_execution_graph(segments: list[Segment]) -> ExecutionGraph:
    """
    Layer segments into stages with Kahn's algorithm.

    A segment enters the first stage in which all of its dependencies
    are already placed in earlier stages. Within a stage, segments keep
    their original order.

    Raises:
        SegmentationError: the dependencies contain a cycle.
    """
    placed: set[str] = set()
    remaining = list(segments)
    stages: list[tuple[str, ...]] = []

    while remaining:
        ready = [
            s for s in remaining
            if all(dep in placed for dep in s.dependencies)
        ]
        if not ready:
            stuck = ", ".join(s.id for s in remaining)
            raise SegmentationError(f"dependency cycle among: {stuck}")

        stage = tuple(s.id for s in ready)
        stages.append(stage)
        placed.update(stage)
        remaining = [s for s in remaining if s.id not in placed]

    return ExecutionGraph(stages=tuple(stages))


def _segment_from_raw(raw: dict[str, Any], index: int) -> Segment:
    raw_id = raw.get("id")
    segment_id = str(raw_id).strip() if raw_id is not None else str(index + 1)
    if not segment_id:
        segment_id = str(index + 1)

    text = str(raw.get("text") or "").strip()
    if not text:
        raise SegmentationError(f"segment '{segment_id}' has no text")

    seg_type = str(raw.get("type") or DEFAULT_SEGMENT_TYPE).lower()
    if seg_type not in SEGMENT_TYPES:
        seg_type = DEFAULT_SEGMENT_TYPE

    complexity = str(
        raw.get("estimatedComplexity")
        or raw.get("estimated_complexity")
        or raw.get("complexity")
        or DEFAULT_COMPLEXITY
    ).lower()
    if complexity not in COMPLEXITY_TIME_MS:
        complexity = DEFAULT_COMPLEXITY

    try:
        priority = int(raw.get("priority", 1))
    except (TypeError, ValueError):
        priority = 1

    raw_deps = raw.get("dependencies") or []
    if not isinstance(raw_deps, list):
        raise SegmentationError(
            f"segment '{segment_id}' has malformed dependencies"
        )
    dependencies: list[str] = []
    for dep in raw_deps:
        dep_id = str(dep).strip()
        if dep_id and dep_id not in dependencies:
            dependencies.append(dep_id)

    return Segment(
        id=segment_id,
        text=text,
        type=seg_type,
        dependencies=tuple(dependencies),
        priority=priority,
        estimated_complexity=complexity,
    )
