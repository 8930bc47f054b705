# =============================================================================
# Stage Scheduler - DAG Execution with Bounded Concurrency
# =============================================================================
#
# Executes the segments of an ExecutionGraph stage by stage:
#
#   stage 0: [s1, s2, s3]  ──all terminal──▶  stage 1: [s4]  ──▶ ...
#             (concurrent)                     (sees s1..s3 findings)
#
# ORDERING GUARANTEE: stage k+1 starts only after every task of stage k
# is terminal (success or failure). Siblings within a stage run in any
# order; their inputs are disjoint.
#
# DESIGN DECISION: Partial failure never aborts.
# A failed dependency is handed to its dependents as empty findings with
# zero confidence. A stage where everything failed still lets the next
# stage run, on empty context.
#
# DESIGN DECISION: Semaphore-bounded fan-out.
# All segments of a stage are created as tasks up front, but at most
# max_parallel_segments hold the semaphore (i.e. are calling the model)
# at once. Extra segments queue rather than fail.
#
# DESIGN DECISION: Deadline keeps finished work.
# When the search deadline passes, in-flight tasks are cancelled, no
# further stage starts, and unfinished segments are reported as failed
# ("cancelled"). Results from completed stages stay usable for a
# degraded synthesis. Cancelling the caller (CancelledError) is
# different: child tasks are cancelled and the error propagates.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from app.agents.runner import SegmentRunner
from app.agents.types import (
    CoordinationEvent,
    DependencyContext,
    ExecutionGraph,
    Segment,
    SegmentFindings,
    SegmentResult,
)
from app.config import settings
from app.services.llm import LLMProvider
from app.services.persistence import PersistenceSink, record_safely

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
STAGE_LIMIT_REASON = "skipped: stage limit"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ExecutionReport:
    """
    Everything the scheduler produced for one graph.

    `results` holds exactly one SegmentResult per segment, keyed by id.
    """

    results: dict[str, SegmentResult]
    coordination_events: list[CoordinationEvent] = field(default_factory=list)
    stages_executed: int = 0
    cancelled: bool = False
    execution_time_ms: int = 0

    @property
    def cache_hits(self) -> int:
        return sum(1 for r in self.results.values() if r.cached)

    @property
    def total_tokens(self) -> int:
        return sum(r.tokens_used for r in self.results.values())

    def ordered(self, segments: list[Segment]) -> list[SegmentResult]:
        return [self.results[s.id] for s in segments]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class StageScheduler:
    """
    Runs segments stage by stage through a SegmentRunner.

    Args:
        runner: Executes individual segments (bound to one query).
        sink: Receives coordination events. Optional.
        max_parallel: Concurrent model calls per stage.
    """

    def __init__(
        self,
        runner: SegmentRunner,
        sink: PersistenceSink | None = None,
        max_parallel: int | None = None,
        search_id: str | None = None,
    ) -> None:
        self._runner = runner
        self._sink = sink
        self._max_parallel = max(
            1,
            max_parallel if max_parallel is not None
            else settings.max_parallel_segments,
        )
        self._search_id = search_id

    async def execute(
        self,
        segments: list[Segment],
        graph: ExecutionGraph,
        llm: LLMProvider,
        *,
        max_stages: int | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecutionReport:
        """
        Execute every stage of `graph` (up to `max_stages`).

        Args:
            segments: The segments named by the graph.
            graph: Stage layering from the segmenter.
            llm: Model capability passed to every segment run.
            max_stages: Run at most this many stages; later segments are
                reported as failed with a stage-limit reason.
            timeout_seconds: Deadline for the whole execution. None
                disables it.
        """
        by_id = {s.id: s for s in segments}
        results: dict[str, SegmentResult] = {}
        events: list[CoordinationEvent] = []
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        deadline = (
            loop.time() + timeout_seconds if timeout_seconds is not None else None
        )
        semaphore = asyncio.Semaphore(self._max_parallel)

        stage_limit = graph.stage_count
        if max_stages is not None:
            stage_limit = max(0, min(max_stages, graph.stage_count))

        stages_executed = 0
        cancelled = False

        for stage_index, stage in enumerate(graph.stages):
            if stage_index >= stage_limit:
                break
            if deadline is not None and loop.time() >= deadline:
                cancelled = True
                break

            logger.info(
                "Stage %d/%d: running %d segment(s) %s",
                stage_index + 1, graph.stage_count, len(stage), list(stage),
            )

            contexts = {
                sid: self._context_for(by_id[sid], by_id, results)
                for sid in stage
            }
            tasks = {
                sid: asyncio.create_task(
                    self._run_one(by_id[sid], contexts[sid], llm, semaphore),
                    name=f"segment-{sid}",
                )
                for sid in stage
            }

            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                done, pending = await asyncio.wait(
                    tasks.values(), timeout=remaining,
                )
            except asyncio.CancelledError:
                for task in tasks.values():
                    task.cancel()
                await asyncio.gather(*tasks.values(), return_exceptions=True)
                raise

            if pending:
                cancelled = True
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

            for sid, task in tasks.items():
                if task in pending:
                    results[sid] = SegmentResult.failed(sid, CANCELLED_REASON)
                    continue
                results[sid] = self._result_of(sid, task)
                if not results[sid].cached:
                    events.extend(
                        await self._emit_events(
                            by_id[sid], contexts[sid], stage_index,
                        )
                    )

            stages_executed += 1
            succeeded = sum(1 for sid in stage if results[sid].success)
            logger.info(
                "Stage %d finished: %d/%d segment(s) succeeded",
                stage_index + 1, succeeded, len(stage),
            )
            if pending:
                logger.warning(
                    "Search deadline reached during stage %d; %d segment(s) "
                    "cancelled, no further stages",
                    stage_index + 1, len(pending),
                )
                break

        # Everything that never ran gets an explicit failed result
        skip_reason = CANCELLED_REASON if cancelled else STAGE_LIMIT_REASON
        for segment in segments:
            if segment.id not in results:
                results[segment.id] = SegmentResult.failed(segment.id, skip_reason)

        return ExecutionReport(
            results=results,
            coordination_events=events,
            stages_executed=stages_executed,
            cancelled=cancelled,
            execution_time_ms=int((time.perf_counter() - started) * 1000),
        )

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _run_one(
        self,
        segment: Segment,
        context: list[DependencyContext],
        llm: LLMProvider,
        semaphore: asyncio.Semaphore,
    ) -> SegmentResult:
        async with semaphore:
            return await self._runner.run(segment, context, llm)

    @staticmethod
    def _context_for(
        segment: Segment,
        by_id: dict[str, Segment],
        results: dict[str, SegmentResult],
    ) -> list[DependencyContext]:
        """Dependency outputs in declaration order; failures are empty."""
        context = []
        for dep_id in segment.dependencies:
            dep_result = results.get(dep_id)
            if dep_result is not None and dep_result.success:
                findings, confidence = dep_result.findings, dep_result.confidence
            else:
                findings, confidence = SegmentFindings(), 0.0
            context.append(DependencyContext(
                segment_id=dep_id,
                text=by_id[dep_id].text,
                findings=findings,
                confidence=confidence,
            ))
        return context

    @staticmethod
    def _result_of(segment_id: str, task: asyncio.Task) -> SegmentResult:
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Segment %s raised unexpectedly: %r", segment_id, exc,
            )
            return SegmentResult.failed(segment_id, f"internal error: {exc}")
        return task.result()

    async def _emit_events(
        self,
        segment: Segment,
        context: list[DependencyContext],
        stage_index: int,
    ) -> list[CoordinationEvent]:
        """One event per embedded dependency; facts_shared counts prompt facts."""
        events = [
            CoordinationEvent(
                consumer=segment.id,
                producer=ctx.segment_id,
                stage=stage_index,
                producer_confidence=ctx.confidence,
                facts_shared=min(len(ctx.findings), self._runner.max_context_facts),
            )
            for ctx in context
            if ctx.findings
        ]
        if self._sink is not None:
            for event in events:
                await record_safely(
                    self._sink.record_coordination_event(
                        self._runner.fingerprint, event,
                        search_id=self._search_id,
                    ),
                    f"coordination {event.producer}->{event.consumer}",
                )
        return events
