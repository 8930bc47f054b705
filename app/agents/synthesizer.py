# =============================================================================
# Synthesizer - One Answer from Many Segment Results
# =============================================================================
#
# Concatenates every segment's findings into a single prompt and asks
# the model for a unified answer, a source list and key points.
#
# AGGREGATE CONFIDENCE:
#   confidence = model_confidence × (0.25 + 0.75 × coverage)
#   coverage   = succeeded segments / all segments
#
# Monotonic non-decreasing in both inputs. Full coverage passes the
# model's confidence through unchanged; zero coverage keeps only a
# quarter of it, so a confident narrative over mostly failed segments
# is still surfaced as weak.
#
# DESIGN DECISION: Synthesis never fails the pipeline.
#   - Unparsable reply → raw text is the answer, model confidence 0.7,
#     empty source list
#   - Failed call      → deterministic digest of the findings, model
#     confidence = mean segment confidence
#
# DESIGN DECISION: Sources are the deduplicated union of segment sources
# (in segment order) followed by any new sources the model cites. The
# answer can attribute nothing the segments did not see, but the model
# may add titles and snippets.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any

from app.agents.parsing import coerce_confidence, extract_json_object
from app.agents.types import Segment, SegmentResult, Source, SynthesizedAnswer
from app.config import settings
from app.services.llm import LLMProvider, ProviderError

logger = logging.getLogger(__name__)

MAX_KEY_POINTS = 5


class SynthesisError(Exception):
    """The synthesis reply did not have the expected structure."""


SYNTHESIS_SYSTEM = """You are synthesizing the findings of several \
research sub-questions into one answer to the user's query.

Findings are grouped by sub-question with a confidence score. Trust \
high-confidence findings more. Findings marked FAILED contributed \
nothing; say so if the answer has gaps because of them.

Respond with ONLY valid JSON (no markdown, no explanation):
{
  "answer": "A clear, well-structured answer to the original query",
  "confidence": 0.0 to 1.0,
  "sources": [{"title": "Source title", "url": "https://...", \
"snippet": "Relevant excerpt"}],
  "keyPoints": ["Key point 1", "Key point 2"]
}

Guidelines:
- Only use facts that appear in the findings
- Cite sources that appear in the findings
- confidence = how completely the findings answer the query"""

SYNTHESIS_TEMPERATURE = 0.3


def aggregate_confidence(model_confidence: float, coverage: float) -> float:
    """Blend self-reported synthesis confidence with segment coverage."""
    model_confidence = max(0.0, min(1.0, model_confidence))
    coverage = max(0.0, min(1.0, coverage))
    return round(model_confidence * (0.25 + 0.75 * coverage), 4)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Synthesizer:
    """Produces the SynthesizedAnswer for one search."""

    def __init__(
        self,
        fallback_confidence: float | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._fallback_confidence = (
            fallback_confidence if fallback_confidence is not None
            else settings.synthesis_fallback_confidence
        )
        self._timeout = (
            timeout_seconds if timeout_seconds is not None
            else settings.segment_timeout_seconds
        )

    async def synthesize(
        self,
        results: list[SegmentResult],
        segments: list[Segment],
        query: str,
        llm: LLMProvider,
    ) -> SynthesizedAnswer:
        """
        Combine segment results into one answer.

        `results` and `segments` are matched by segment id; segments
        without a result count as failed.
        """
        by_id = {r.segment_id: r for r in results}
        ordered = [by_id.get(s.id) for s in segments]
        succeeded = sum(1 for r in ordered if r is not None and r.success)
        coverage = succeeded / len(segments) if segments else 0.0
        segment_sources = _segment_sources(segments, by_id)

        prompt = _format_findings(query, segments, by_id)
        try:
            response = await asyncio.wait_for(
                llm.complete(
                    messages=[{"role": "user", "content": prompt}],
                    system=SYNTHESIS_SYSTEM,
                    temperature=SYNTHESIS_TEMPERATURE,
                ),
                timeout=self._timeout,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning("Synthesis call failed (%s); using findings digest", e)
            model_conf = _mean_confidence(ordered)
            return SynthesizedAnswer(
                answer=_digest(segments, by_id),
                confidence=aggregate_confidence(model_conf, coverage),
                model_confidence=model_conf,
                coverage=round(coverage, 4),
                sources=segment_sources,
                key_points=_top_facts(segments, by_id),
                model=llm.model_id,
                fallback="provider_error",
            )

        try:
            parsed = parse_synthesis(response.content)
        except SynthesisError as e:
            logger.warning("Unparsable synthesis reply (%s); using raw text", e)
            model_conf = self._fallback_confidence
            return SynthesizedAnswer(
                answer=response.content.strip(),
                confidence=aggregate_confidence(model_conf, coverage),
                model_confidence=model_conf,
                coverage=round(coverage, 4),
                sources=[],
                key_points=[],
                tokens_used=response.total_tokens,
                model=response.model,
                fallback="unparsed",
            )

        model_conf = parsed["confidence"]
        if model_conf is None:
            model_conf = self._fallback_confidence

        answer = SynthesizedAnswer(
            answer=parsed["answer"],
            confidence=aggregate_confidence(model_conf, coverage),
            model_confidence=model_conf,
            coverage=round(coverage, 4),
            sources=merge_sources(segment_sources, parsed["sources"]),
            key_points=parsed["key_points"] or _top_facts(segments, by_id),
            tokens_used=response.total_tokens,
            model=response.model,
        )
        logger.info(
            "Synthesized answer: confidence=%.2f (model=%.2f, coverage=%.2f), "
            "%d sources",
            answer.confidence, model_conf, coverage, len(answer.sources),
        )
        return answer


def parse_synthesis(content: str) -> dict[str, Any]:
    """
    Validate the synthesis reply.

    Raises:
        SynthesisError: not JSON, or no non-empty "answer" string.
    """
    try:
        payload = extract_json_object(content)
    except ValueError as e:
        raise SynthesisError(str(e)) from e

    answer = payload.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        raise SynthesisError("reply has no answer text")

    sources: list[Source] = []
    raw_sources = payload.get("sources")
    if isinstance(raw_sources, list):
        for raw in raw_sources:
            source = _source_from_raw(raw)
            if source is not None:
                sources.append(source)

    key_points = []
    raw_points = payload.get("keyPoints", payload.get("key_points"))
    if isinstance(raw_points, list):
        key_points = [str(p).strip() for p in raw_points if str(p).strip()]

    return {
        "answer": answer.strip(),
        "confidence": coerce_confidence(payload.get("confidence")),
        "sources": sources,
        "key_points": key_points,
    }


def merge_sources(*groups: list[Source]) -> list[Source]:
    """Concatenate source lists, keeping the first of each reference."""
    seen: set[str] = set()
    merged = []
    for group in groups:
        for source in group:
            if source.reference not in seen:
                seen.add(source.reference)
                merged.append(source)
    return merged


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _source_from_raw(raw: Any) -> Source | None:
    if isinstance(raw, str):
        reference = raw.strip()
        return Source(reference=reference) if reference else None
    if not isinstance(raw, dict):
        return None
    url = str(raw.get("url") or "").strip()
    title = str(raw.get("title") or "").strip()
    reference = url or title
    if not reference:
        return None
    snippet = str(raw.get("snippet") or "").strip()
    return Source(
        reference=reference,
        title=title or None,
        snippet=snippet or None,
    )


def _segment_sources(
    segments: list[Segment], by_id: dict[str, SegmentResult],
) -> list[Source]:
    groups = []
    for segment in segments:
        result = by_id.get(segment.id)
        if result is not None and result.success:
            groups.append([Source(reference=s) for s in result.findings.sources])
    return merge_sources(*groups)


def _format_findings(
    query: str, segments: list[Segment], by_id: dict[str, SegmentResult],
) -> str:
    sections = []
    for index, segment in enumerate(segments, 1):
        result = by_id.get(segment.id)
        if result is None or not result.success:
            reason = result.error if result is not None else "not executed"
            sections.append(
                f"[{index}] {segment.text}\nFAILED ({reason})"
            )
            continue
        lines = [
            f"- {f.fact}" + (f" [{f.source}]" if f.source else "")
            for f in result.findings.items
        ] or ["- (no findings)"]
        sections.append(
            f"[{index}] {segment.text} (confidence {result.confidence:.2f})\n"
            + "\n".join(lines)
        )
    return (
        f"Original query: {query}\n\n"
        f"Findings by sub-question:\n\n" + "\n\n".join(sections)
    )


def _mean_confidence(results: list[SegmentResult | None]) -> float:
    if not results:
        return 0.0
    return round(
        sum(r.confidence for r in results if r is not None) / len(results), 4,
    )


def _top_facts(
    segments: list[Segment], by_id: dict[str, SegmentResult],
) -> list[str]:
    """First fact of each successful segment, most confident first."""
    ranked = sorted(
        (
            by_id[s.id] for s in segments
            if s.id in by_id and by_id[s.id].success and by_id[s.id].findings
        ),
        key=lambda r: r.confidence,
        reverse=True,
    )
    return [r.findings.items[0].fact for r in ranked[:MAX_KEY_POINTS]]


def _digest(segments: list[Segment], by_id: dict[str, SegmentResult]) -> str:
    succeeded = [
        s for s in segments if s.id in by_id and by_id[s.id].success
    ]
    lines = [
        f"Segmented search completed ({len(succeeded)}/{len(segments)} "
        f"segments)."
    ]
    findings = []
    for segment in succeeded:
        for fact in by_id[segment.id].findings.facts[:3]:
            findings.append(f"- {fact}")
    if findings:
        lines.append("")
        lines.append("Key findings:")
        lines.extend(findings)
    return "\n".join(lines)
