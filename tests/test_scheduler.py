# =============================================================================
# Unit Tests - Stage Scheduler
# =============================================================================
#
# Stage ordering, partial failure, determinism, bounded concurrency,
# stage limits, deadlines and cancellation. Model calls are scripted;
# timing-sensitive tests use short sleeps only.
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from app.agents.runner import SegmentRunner
from app.agents.scheduler import CANCELLED_REASON, STAGE_LIMIT_REASON, StageScheduler
from app.agents.segmenter import build_execution_graph
from app.agents.types import Segment
from app.services.llm import ProviderError
from stubs import ScriptedLLM, findings_json, sub_question


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


X = Segment(id="x", text="Find facts about X", type="entity")
Y = Segment(id="y", text="Find facts about Y", type="entity")
XY = Segment(id="xy", text="Compare X and Y", type="comparison", dependencies=("x", "y"))
SEGMENTS = [X, Y, XY]
GRAPH = build_execution_graph(SEGMENTS)

REPLIES = {
    X.text: findings_json(("X is fast", "https://x.example"), confidence=0.9),
    Y.text: findings_json(("Y is cheap", "https://y.example"), confidence=0.9),
    XY.text: findings_json(("X beats Y on speed", "https://x.example"), confidence=0.9),
}


def _scheduler(sink=None, cache=None, max_parallel=None, **runner_kwargs):
    runner_kwargs.setdefault("threshold", 0.4)
    runner = SegmentRunner("fp-test", sink=sink, cache=cache, **runner_kwargs)
    return StageScheduler(runner, sink=sink, max_parallel=max_parallel)


@dataclass
class TimelineLLM(ScriptedLLM):
    """Records start/finish order and peak concurrency of segment calls."""

    pause: float = 0.02
    in_flight: int = 0
    peak: int = 0
    timeline: list[tuple[str, str]] = field(default_factory=list)

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        text = sub_question(messages[-1]["content"])
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.timeline.append(("start", text))
        try:
            await asyncio.sleep(self.pause)
            return await super().complete(messages, system, temperature, max_tokens)
        finally:
            self.in_flight -= 1
            self.timeline.append(("finish", text))


# ---------------------------------------------------------------------------
# Test: Stage execution
# ---------------------------------------------------------------------------


class TestStageExecution:
    """The basic two-stage compare graph."""

    def test_one_result_per_segment(self, sink):
        llm = ScriptedLLM(segments=dict(REPLIES))
        report = _run(_scheduler(sink=sink).execute(SEGMENTS, GRAPH, llm))

        assert set(report.results) == {"x", "y", "xy"}
        assert all(r.success for r in report.results.values())
        assert report.stages_executed == 2
        assert not report.cancelled
        assert [r.segment_id for r in report.ordered(SEGMENTS)] == ["x", "y", "xy"]

    def test_stage_zero_has_no_context(self):
        llm = ScriptedLLM(segments=dict(REPLIES))
        _run(_scheduler().execute(SEGMENTS, GRAPH, llm))

        for text in (X.text, Y.text):
            prompt = llm.segment_calls(text)[0]["prompt"]
            assert "Findings from earlier sub-questions" not in prompt

    def test_dependent_sees_both_findings(self):
        llm = ScriptedLLM(segments=dict(REPLIES))
        report = _run(_scheduler().execute(SEGMENTS, GRAPH, llm))

        prompt = llm.segment_calls(XY.text)[0]["prompt"]
        assert "X is fast" in prompt
        assert "Y is cheap" in prompt
        assert report.results["xy"].coordination_events == 2

    def test_coordination_events_emitted_and_persisted(self, sink):
        llm = ScriptedLLM(segments=dict(REPLIES))
        report = _run(_scheduler(sink=sink).execute(SEGMENTS, GRAPH, llm))

        pairs = {(e.consumer, e.producer) for e in report.coordination_events}
        assert pairs == {("xy", "x"), ("xy", "y")}
        assert all(e.stage == 1 for e in report.coordination_events)
        assert len(sink.coordination_events) == 2

    def test_facts_shared_counts_only_embedded_facts(self, sink):
        replies = dict(REPLIES)
        replies[X.text] = findings_json(
            *[(f"X fact {i}", f"https://x.example/{i}") for i in range(5)],
            confidence=0.9,
        )
        llm = ScriptedLLM(segments=replies)
        report = _run(_scheduler(sink=sink, max_context_facts=2).execute(
            SEGMENTS, GRAPH, llm,
        ))

        shared = {e.producer: e.facts_shared for e in report.coordination_events}
        assert shared == {"x": 2, "y": 1}
        assert "X fact 2" not in llm.segment_calls(XY.text)[0]["prompt"]
        assert sorted(r["facts_shared"] for r in sink.coordination_events) == [1, 2]

    def test_next_stage_waits_for_whole_stage(self):
        llm = TimelineLLM(segments=dict(REPLIES))
        _run(_scheduler().execute(SEGMENTS, GRAPH, llm))

        xy_start = llm.timeline.index(("start", XY.text))
        assert llm.timeline.index(("finish", X.text)) < xy_start
        assert llm.timeline.index(("finish", Y.text)) < xy_start

    def test_deterministic_across_runs(self):
        def summary(report):
            return {
                sid: (r.success, r.confidence, r.findings, r.was_escalated)
                for sid, r in report.results.items()
            }

        first = _run(_scheduler().execute(
            SEGMENTS, GRAPH, ScriptedLLM(segments=dict(REPLIES)),
        ))
        second = _run(_scheduler().execute(
            SEGMENTS, GRAPH, ScriptedLLM(segments=dict(REPLIES)),
        ))
        assert summary(first) == summary(second)


# ---------------------------------------------------------------------------
# Test: Partial failure
# ---------------------------------------------------------------------------


class TestPartialFailure:
    """One failed segment never blocks unrelated ones."""

    def test_failed_sibling_does_not_affect_others(self):
        z = Segment(id="z", text="Find facts about Z")
        segments = [X, z, Y, XY]
        replies = dict(REPLIES)
        replies[z.text] = ProviderError("boom")
        llm = ScriptedLLM(segments=replies)

        report = _run(_scheduler().execute(
            segments, build_execution_graph(segments), llm,
        ))

        assert not report.results["z"].success
        assert report.results["x"].findings.facts == ["X is fast"]
        assert report.results["y"].findings.facts == ["Y is cheap"]
        assert report.results["xy"].success
        assert report.stages_executed == 2

    def test_failed_dependency_passed_as_empty_context(self):
        replies = dict(REPLIES)
        replies[Y.text] = ProviderError("boom")
        llm = ScriptedLLM(segments=replies)

        report = _run(_scheduler().execute(SEGMENTS, GRAPH, llm))

        prompt = llm.segment_calls(XY.text)[0]["prompt"]
        assert "X is fast" in prompt
        assert Y.text not in prompt
        assert report.results["xy"].coordination_events == 1
        assert [e.producer for e in report.coordination_events] == ["x"]

    def test_whole_stage_failing_still_runs_next_stage(self):
        replies = dict(REPLIES)
        replies[X.text] = ProviderError("boom")
        replies[Y.text] = ProviderError("boom")
        llm = ScriptedLLM(segments=replies)

        report = _run(_scheduler().execute(SEGMENTS, GRAPH, llm))

        assert report.stages_executed == 2
        assert report.results["xy"].success
        assert report.coordination_events == []
        prompt = llm.segment_calls(XY.text)[0]["prompt"]
        assert "Findings from earlier sub-questions" not in prompt

    def test_unexpected_runner_error_becomes_failure(self):
        class _ExplodingRunner(SegmentRunner):
            async def run(self, segment, context, llm):
                if segment.id == "x":
                    raise RuntimeError("bug")
                return await super().run(segment, context, llm)

        scheduler = StageScheduler(_ExplodingRunner("fp-test"))
        report = _run(scheduler.execute(
            SEGMENTS, GRAPH, ScriptedLLM(segments=dict(REPLIES)),
        ))
        assert "internal error" in report.results["x"].error
        assert report.results["y"].success
        assert report.results["xy"].success


# ---------------------------------------------------------------------------
# Test: Backpressure, limits and deadlines
# ---------------------------------------------------------------------------


class TestBoundsAndCancellation:
    """Concurrency cap, stage limit, deadline, caller cancellation."""

    def test_parallelism_capped(self):
        wide = [Segment(id=f"w{i}", text=f"Wide question {i}") for i in range(6)]
        llm = TimelineLLM()
        report = _run(_scheduler(max_parallel=2).execute(
            wide, build_execution_graph(wide), llm,
        ))

        assert llm.peak == 2
        assert all(r.success for r in report.results.values())

    def test_max_stages(self, sink):
        llm = ScriptedLLM(segments=dict(REPLIES))
        report = _run(_scheduler(sink=sink).execute(
            SEGMENTS, GRAPH, llm, max_stages=1,
        ))

        assert report.stages_executed == 1
        assert report.results["x"].success
        assert report.results["xy"].error == STAGE_LIMIT_REASON
        assert llm.segment_calls(XY.text) == []
        assert not report.cancelled

    def test_deadline_cancels_in_flight_and_skips_later_stages(self):
        llm = ScriptedLLM(segments=dict(REPLIES), delays={Y.text: 5.0})
        report = _run(_scheduler().execute(
            SEGMENTS, GRAPH, llm, timeout_seconds=0.1,
        ))

        assert report.cancelled
        assert report.results["x"].success
        assert report.results["y"].error == CANCELLED_REASON
        assert report.results["xy"].error == CANCELLED_REASON
        assert report.stages_executed == 1
        assert llm.segment_calls(XY.text) == []

    def test_caller_cancellation_propagates(self):
        llm = ScriptedLLM(segments=dict(REPLIES), delays={X.text: 5.0, Y.text: 5.0})

        async def scenario():
            task = asyncio.create_task(_scheduler().execute(SEGMENTS, GRAPH, llm))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            others = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            return others

        assert _run(scenario()) == []
        assert llm.calls == []

    def test_cached_results_count_as_hits_without_events(self, cache):
        scheduler = _scheduler(cache=cache)
        _run(scheduler.execute(SEGMENTS, GRAPH, ScriptedLLM(segments=dict(REPLIES))))

        llm = ScriptedLLM(segments=dict(REPLIES))
        report = _run(scheduler.execute(SEGMENTS, GRAPH, llm))

        assert report.cache_hits == 3
        assert report.coordination_events == []
        assert llm.calls == []
