# =============================================================================
# Unit Tests - Segmenter
# =============================================================================
#
# Decomposition parsing, Kahn layering, fallback on malformed plans and
# the segmentation cache. Uses ScriptedLLM and InMemoryCache only.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest

from app.agents.segmenter import (
    FALLBACK_SEGMENT_ID,
    SegmentationError,
    Segmenter,
    build_execution_graph,
    parse_segments,
)
from app.agents.types import Segment
from app.services.cache import CacheError, query_fingerprint, segmentation_key
from app.services.llm import ProviderError
from stubs import ScriptedLLM, segments_json


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _seg(id, deps=(), text=None):
    return Segment(id=id, text=text or f"question {id}", dependencies=tuple(deps))


def _assert_layering_invariant(segments, graph):
    placed = [sid for stage in graph.stages for sid in stage]
    assert sorted(placed) == sorted(s.id for s in segments)
    assert len(placed) == len(set(placed))
    for segment in segments:
        own = graph.stage_index(segment.id)
        for dep in segment.dependencies:
            assert graph.stage_index(dep) < own


COMPARE_PLAN = segments_json(
    {"id": "1", "text": "Find facts about X", "type": "entity",
     "priority": 1, "dependencies": [], "estimatedComplexity": "tiny"},
    {"id": "2", "text": "Find facts about Y", "type": "entity",
     "priority": 1, "dependencies": [], "estimatedComplexity": "small"},
    {"id": "3", "text": "Compare X and Y", "type": "comparison",
     "priority": 2, "dependencies": ["1", "2"], "estimatedComplexity": "medium"},
)


class _BrokenCache:
    """Cache whose backend is always down."""

    async def get(self, key):
        raise CacheError("connection refused")

    async def put(self, key, payload, ttl_seconds):
        raise CacheError("connection refused")


# ---------------------------------------------------------------------------
# Test: Execution graph layering
# ---------------------------------------------------------------------------


class TestBuildExecutionGraph:
    """Kahn layering into stages."""

    def test_independent_segments_share_one_stage(self):
        graph = build_execution_graph([_seg("a"), _seg("b"), _seg("c")])
        assert graph.stages == (("a", "b", "c"),)
        assert graph.parallelizable == [["a", "b", "c"]]
        assert graph.sequential == []

    def test_chain_is_fully_sequential(self):
        graph = build_execution_graph([
            _seg("a"), _seg("b", ["a"]), _seg("c", ["b"]),
        ])
        assert graph.stages == (("a",), ("b",), ("c",))
        assert graph.sequential == ["a", "b", "c"]
        assert graph.parallelizable == []

    def test_ties_keep_original_order(self):
        # "a" is listed first but depends on "c"
        graph = build_execution_graph([
            _seg("a", ["c"]), _seg("b"), _seg("c"),
        ])
        assert graph.stages == (("b", "c"), ("a",))

    def test_diamond(self):
        segments = [
            _seg("root"),
            _seg("left", ["root"]),
            _seg("right", ["root"]),
            _seg("join", ["left", "right"]),
        ]
        graph = build_execution_graph(segments)
        assert graph.stage_count == 3
        assert graph.stages[1] == ("left", "right")
        _assert_layering_invariant(segments, graph)

    @pytest.mark.parametrize("segments", [
        [_seg("a"), _seg("b", ["a"]), _seg("c", ["a"]), _seg("d", ["b", "c"])],
        [_seg("x", ["z"]), _seg("y", ["x"]), _seg("z")],
        [_seg("1"), _seg("2"), _seg("3", ["1"]), _seg("4", ["3", "2"]),
         _seg("5", ["1"]), _seg("6", ["4", "5"])],
    ])
    def test_layering_invariant(self, segments):
        _assert_layering_invariant(segments, build_execution_graph(segments))

    def test_cycle_rejected(self):
        with pytest.raises(SegmentationError, match="cycle"):
            build_execution_graph([
                _seg("a", ["c"]), _seg("b", ["a"]), _seg("c", ["b"]),
            ])

    def test_stage_index_unknown_segment(self):
        graph = build_execution_graph([_seg("a")])
        with pytest.raises(KeyError):
            graph.stage_index("nope")


# ---------------------------------------------------------------------------
# Test: Parsing the decomposition reply
# ---------------------------------------------------------------------------


class TestParseSegments:
    """Validation of the model's decomposition."""

    def test_parses_fields(self):
        segments = parse_segments(COMPARE_PLAN)
        assert [s.id for s in segments] == ["1", "2", "3"]
        assert segments[2].dependencies == ("1", "2")
        assert segments[2].type == "comparison"
        assert segments[0].estimated_complexity == "tiny"

    def test_code_fenced_reply(self):
        segments = parse_segments(f"Here you go:\n```json\n{COMPARE_PLAN}\n```")
        assert len(segments) == 3

    def test_bare_list_accepted(self):
        segments = parse_segments('[{"id": "1", "text": "Only question"}]')
        assert segments[0].text == "Only question"

    def test_unknown_type_coerced_to_context(self):
        segments = parse_segments(segments_json(
            {"id": "1", "text": "q", "type": "mystery"},
        ))
        assert segments[0].type == "context"

    def test_defaults_for_missing_metadata(self):
        segment = parse_segments(segments_json({"id": 7, "text": "q"}))[0]
        assert segment.id == "7"
        assert segment.priority == 1
        assert segment.estimated_complexity == "small"

    def test_estimated_tokens_rounds_up(self):
        segment = parse_segments(segments_json({"id": "1", "text": "abcde"}))[0]
        assert segment.estimated_tokens == 2

    def test_duplicate_dependencies_collapsed(self):
        segments = parse_segments(segments_json(
            {"id": "1", "text": "a"},
            {"id": "2", "text": "b", "dependencies": ["1", "1"]},
        ))
        assert segments[1].dependencies == ("1",)

    @pytest.mark.parametrize("reply", [
        "not json at all",
        '{"segments": []}',
        '{"other": 1}',
        segments_json({"id": "1", "text": "a"}, {"id": "1", "text": "b"}),
        segments_json({"id": "1", "text": "a", "dependencies": ["9"]}),
        segments_json({"id": "1", "text": "a", "dependencies": ["1"]}),
        segments_json({"id": "1", "text": ""}),
    ])
    def test_malformed_plans_rejected(self, reply):
        with pytest.raises(SegmentationError):
            parse_segments(reply)


# ---------------------------------------------------------------------------
# Test: Segmenter
# ---------------------------------------------------------------------------


class TestSegmenter:
    """End-to-end segmentation with cache and fallback."""

    def test_compare_query_has_two_stages(self, cache):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        result = _run(Segmenter(cache=cache).segment("Compare X and Y", llm))

        assert result.graph.stage_count == 2
        assert result.graph.stages == (("1", "2"), ("3",))
        assert result.fingerprint == query_fingerprint("Compare X and Y", "stub-model")
        assert not result.cached
        assert not result.fallback
        assert result.tokens_used == 15

    def test_estimates(self, cache):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        result = _run(Segmenter(cache=cache).segment("Compare X and Y", llm))
        # stage 0: max(tiny 500, small 2000); stage 1: medium 5000
        assert result.estimated_time_ms == 7000
        assert result.estimated_total_tokens == sum(
            s.estimated_tokens for s in result.segments
        )

    def test_malformed_json_falls_back_to_whole_query(self, cache):
        llm = ScriptedLLM(segmentation="{ this is not json")
        result = _run(Segmenter(cache=cache).segment("What is X?", llm))

        assert result.fallback
        assert result.graph.stage_count == 1
        assert len(result.segments) == 1
        assert result.segments[0].id == FALLBACK_SEGMENT_ID
        assert result.segments[0].text == "What is X?"

    def test_cyclic_plan_falls_back(self, cache):
        llm = ScriptedLLM(segmentation=segments_json(
            {"id": "a", "text": "first", "dependencies": ["b"]},
            {"id": "b", "text": "second", "dependencies": ["a"]},
        ))
        result = _run(Segmenter(cache=cache).segment("Loop query", llm))

        assert result.fallback
        assert result.graph.stages == ((FALLBACK_SEGMENT_ID,),)
        assert "cycle" in result.errors[0]

    def test_fallback_is_not_cached(self, cache):
        llm = ScriptedLLM(segmentation="garbage")
        segmenter = Segmenter(cache=cache)
        _run(segmenter.segment("What is X?", llm))
        _run(segmenter.segment("What is X?", llm))
        assert len(llm.calls_of("segmentation")) == 2
        assert len(cache) == 0

    def test_cache_hit_skips_model(self, cache):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        segmenter = Segmenter(cache=cache)
        first = _run(segmenter.segment("Compare X and Y", llm))
        second = _run(segmenter.segment("compare   x and y", llm))

        assert len(llm.calls_of("segmentation")) == 1
        assert second.cached
        assert second.graph == first.graph
        assert [s.id for s in second.segments] == ["1", "2", "3"]
        assert first.tokens_used == 15
        assert second.tokens_used == 0  # nothing spent on a cache hit

    def test_cache_written_even_without_use_cache(self, cache):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        segmenter = Segmenter(cache=cache)
        _run(segmenter.segment("Compare X and Y", llm, use_cache=False))
        _run(segmenter.segment("Compare X and Y", llm, use_cache=False))
        assert len(llm.calls_of("segmentation")) == 2

        fp = query_fingerprint("Compare X and Y", llm.model_id)
        assert _run(cache.get(segmentation_key(fp)))["fingerprint"] == fp

        third = _run(segmenter.segment("Compare X and Y", llm, use_cache=True))
        assert third.cached
        assert len(llm.calls_of("segmentation")) == 2

    def test_cache_expires(self, cache, clock):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        segmenter = Segmenter(cache=cache, ttl_seconds=300)
        _run(segmenter.segment("Compare X and Y", llm))
        clock.advance(301)
        result = _run(segmenter.segment("Compare X and Y", llm))
        assert not result.cached
        assert len(llm.calls_of("segmentation")) == 2

    def test_different_model_does_not_share_cache(self, cache):
        segmenter = Segmenter(cache=cache)
        _run(segmenter.segment("Q", ScriptedLLM(segmentation=COMPARE_PLAN)))
        other = ScriptedLLM(segmentation=COMPARE_PLAN, model_id="other-model")
        result = _run(segmenter.segment("Q", other))
        assert not result.cached

    def test_broken_cache_is_ignored(self):
        llm = ScriptedLLM(segmentation=COMPARE_PLAN)
        result = _run(Segmenter(cache=_BrokenCache()).segment("Q", llm))
        assert result.graph.stage_count == 2

    def test_provider_error_propagates(self, cache):
        llm = ScriptedLLM(segmentation=ProviderError("auth failed"))
        with pytest.raises(ProviderError):
            _run(Segmenter(cache=cache).segment("Q", llm))

    def test_decomposition_timeout_is_provider_error(self, cache):
        class _Hanging(ScriptedLLM):
            async def complete(self, messages, system=None, temperature=None, max_tokens=None):
                await asyncio.sleep(10)

        segmenter = Segmenter(cache=cache, timeout_seconds=0.01)
        with pytest.raises(ProviderError, match="timed out"):
            _run(segmenter.segment("Q", _Hanging()))
