# =============================================================================
# Segment Runner - One Segment, At Most Two Model Calls
# =============================================================================
#
# Runs a single segment:
#
# 1. CACHE - reuse a confident result for the same segment (id, text and
#    dependencies) of the same query
# 2. CALL - segment text + dependency findings → model
# 3. PARSE + SCORE - findings (fact/source pairs) and a confidence
# 4. ESCALATE - if confidence < threshold or the call failed, retry ONCE
#    with a refined prompt and keep the better attempt
#
# CONFIDENCE HEURISTIC (clamped to [0,1]):
#   no facts            → 0.1
#   otherwise           → 0.3
#                         + 0.15 × min(facts, 4) / 4    (volume)
#                         + 0.35 × cited_facts / facts  (attribution)
#   self-reported value → averaged with the heuristic
#   unparsable reply    → raw text as one finding, capped at 0.5
#
# DESIGN DECISION: Model output is never trusted to be well-formed.
# An unparsable reply is a weak success, not a failure. Only a failed
# call (ProviderError, per-call timeout) or an empty reply yields a
# SegmentFailure.
#
# DESIGN DECISION: Bounded escalation.
# Exactly one retry, same model, refined prompt. Ties between the two
# attempts go to the retry. The kept result carries was_escalated=True
# and the token/time totals of both attempts. Each attempt is persisted
# on its own, so history shows both.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from app.agents.parsing import coerce_confidence, extract_json_object
from app.agents.types import (
    DependencyContext,
    Finding,
    Segment,
    SegmentFailure,
    SegmentFindings,
    SegmentResult,
    SegmentSuccess,
)
from app.config import settings
from app.services.cache import Cache, CacheError, CacheMiss, segment_result_key
from app.services.llm import LLMProvider, LLMResponse, ProviderError
from app.services.persistence import PersistenceSink, record_safely

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution Prompts
# ---------------------------------------------------------------------------

SEGMENT_SYSTEM = """You are a research assistant answering one \
sub-question of a larger search query.

Answer ONLY the sub-question you are given. If findings from earlier \
sub-questions are provided, build on them rather than repeating them.

Respond with ONLY valid JSON (no markdown, no explanation):
{
  "findings": [
    {"fact": "One atomic, verifiable statement", "source": "URL or \
citation it came from, or null"}
  ],
  "confidence": 0.0 to 1.0
}

Guidelines:
- One fact per finding. Keep facts short and specific.
- Cite a source for every fact you can. Do not invent sources.
- confidence = how sure you are that the findings answer the sub-question"""

_ESCALATION_SUFFIX = """

Your previous answer to this sub-question was not good enough \
({reason}). Try again:
- Be more specific and give concrete facts
- Cite a source for each fact
- If the sub-question cannot be answered, return an empty findings \
list with a low confidence"""

EXECUTION_TEMPERATURE = 0.3


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class SegmentRunner:
    """
    Executes segments of one query.

    One runner serves one search: it is bound to the query fingerprint
    (for cache keys and history records) and shared by every segment
    task of that search.
    """

    def __init__(
        self,
        fingerprint: str,
        *,
        query: str | None = None,
        sink: PersistenceSink | None = None,
        cache: Cache | None = None,
        use_cache: bool = True,
        search_id: str | None = None,
        threshold: float | None = None,
        unparsed_cap: float | None = None,
        timeout_seconds: float | None = None,
        max_context_facts: int | None = None,
        max_findings: int | None = None,
        cache_ttl_seconds: float | None = None,
    ) -> None:
        self.fingerprint = fingerprint
        self._query = query
        self._sink = sink
        self._cache = cache
        self._use_cache = use_cache
        self._search_id = search_id
        self.threshold = _default(threshold, settings.escalation_confidence_threshold)
        self._unparsed_cap = _default(unparsed_cap, settings.unparsed_confidence_cap)
        self._timeout = _default(timeout_seconds, settings.segment_timeout_seconds)
        self.max_context_facts = _default(
            max_context_facts, settings.max_context_facts_per_dependency,
        )
        self._max_findings = _default(max_findings, settings.max_findings_per_segment)
        self._cache_ttl = _default(
            cache_ttl_seconds, settings.segment_result_cache_ttl_seconds,
        )

    async def run(
        self,
        segment: Segment,
        context: list[DependencyContext],
        llm: LLMProvider,
    ) -> SegmentResult:
        """
        Execute one segment with its dependency context.

        Never raises for model failures: a segment whose calls both fail
        comes back as a SegmentFailure result.
        """
        if self._use_cache:
            cached = await self._read_cache(segment)
            if cached is not None:
                logger.info(
                    "Segment %s served from cache (confidence=%.2f)",
                    segment.id, cached.confidence,
                )
                return cached

        consumed = [c for c in context if c.findings]
        prompt = self.build_prompt(segment, consumed)

        first = await self._attempt(segment, prompt, llm, attempt=1)
        first.coordination_events = len(consumed)
        await self._persist(first)

        result = first
        if not first.success or first.confidence < self.threshold:
            reason = first.error or f"confidence {first.confidence:.2f}"
            logger.warning(
                "Escalating segment %s (%s, threshold=%.2f)",
                segment.id, reason, self.threshold,
            )
            refined = prompt + _ESCALATION_SUFFIX.format(reason=reason)
            second = await self._attempt(segment, refined, llm, attempt=2)
            second.coordination_events = len(consumed)
            second.was_escalated = True
            await self._persist(second)

            # Ties favour the later attempt
            result = second if second.confidence >= first.confidence else first
            result.was_escalated = True
            result.tokens_used = first.tokens_used + second.tokens_used
            result.execution_time_ms = (
                first.execution_time_ms + second.execution_time_ms
            )

        if result.success and result.confidence >= self.threshold:
            await self._write_cache(segment, result)

        logger.info(
            "Segment %s finished: success=%s confidence=%.2f findings=%d "
            "escalated=%s",
            segment.id, result.success, result.confidence,
            len(result.findings), result.was_escalated,
        )
        return result

    def build_prompt(
        self, segment: Segment, consumed: list[DependencyContext],
    ) -> str:
        """Segment text plus the top facts of each consumed dependency."""
        parts = []
        if self._query:
            parts.append(f"Original query: {self._query}")
        parts.append(f"Sub-question ({segment.type}): {segment.text}")

        if consumed:
            sections = []
            for ctx in consumed:
                lines = []
                for finding in ctx.findings.items[:self.max_context_facts]:
                    cite = f" [{finding.source}]" if finding.source else ""
                    lines.append(f"- {finding.fact}{cite}")
                sections.append(
                    f"From \"{ctx.text}\" (confidence {ctx.confidence:.2f}):\n"
                    + "\n".join(lines)
                )
            parts.append(
                "Findings from earlier sub-questions:\n\n"
                + "\n\n".join(sections)
            )

        return "\n\n".join(parts)

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _attempt(
        self,
        segment: Segment,
        prompt: str,
        llm: LLMProvider,
        attempt: int,
    ) -> SegmentResult:
        start = time.perf_counter()
        try:
            response = await self._call(prompt, llm)
        except ProviderError as e:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.warning(
                "Segment %s attempt %d failed: %s", segment.id, attempt, e,
            )
            return SegmentResult.failed(
                segment.id,
                f"provider error: {e}",
                execution_time_ms=elapsed_ms,
                attempt=attempt,
                model=llm.model_id,
            )

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        outcome = self.score_reply(response.content)
        return SegmentResult(
            segment_id=segment.id,
            outcome=outcome,
            tokens_used=response.total_tokens,
            execution_time_ms=elapsed_ms,
            attempt=attempt,
            model=response.model,
            raw_output=response.content,
        )

    async def _call(self, prompt: str, llm: LLMProvider) -> LLMResponse:
        try:
            return await asyncio.wait_for(
                llm.complete(
                    messages=[{"role": "user", "content": prompt}],
                    system=SEGMENT_SYSTEM,
                    temperature=EXECUTION_TEMPERATURE,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"segment call timed out after {self._timeout}s"
            ) from e

    def score_reply(self, content: str) -> SegmentSuccess | SegmentFailure:
        """Parse a reply into findings and a confidence."""
        try:
            payload = extract_json_object(content)
        except ValueError:
            text = content.strip()
            if not text:
                return SegmentFailure(reason="empty model reply")
            logger.warning("Unparsable segment reply; keeping raw text")
            findings = SegmentFindings(items=(Finding(fact=text),))
            confidence = min(self._unparsed_cap, score_findings(findings))
            return SegmentSuccess(findings=findings, confidence=confidence)

        findings = parse_findings(payload, self._max_findings)
        confidence = score_findings(
            findings, coerce_confidence(payload.get("confidence")),
        )
        return SegmentSuccess(findings=findings, confidence=confidence)

    async def _persist(self, result: SegmentResult) -> None:
        if self._sink is None:
            return
        await record_safely(
            self._sink.record_segment_execution(
                self.fingerprint, result, search_id=self._search_id,
            ),
            f"execution of segment {result.segment_id}",
        )

    async def _read_cache(self, segment: Segment) -> SegmentResult | None:
        if self._cache is None:
            return None
        key = _cache_key(self.fingerprint, segment)
        try:
            payload = await self._cache.get(key)
        except CacheMiss:
            return None
        except CacheError as e:
            logger.warning("Segment cache read failed: %s", e)
            return None
        try:
            result = SegmentResult.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cached segment result: %s", e)
            return None
        # Nothing was spent on this run
        result.cached = True
        result.coordination_events = 0
        result.tokens_used = 0
        result.execution_time_ms = 0
        return result

    async def _write_cache(self, segment: Segment, result: SegmentResult) -> None:
        if self._cache is None:
            return
        key = _cache_key(self.fingerprint, segment)
        try:
            await self._cache.put(key, result.to_dict(), self._cache_ttl)
        except CacheError as e:
            logger.warning("Segment cache write failed: %s", e)


# ---------------------------------------------------------------------------
# Parsing and Scoring
# ---------------------------------------------------------------------------


def parse_findings(payload: dict[str, Any], limit: int = 10) -> SegmentFindings:
    """
    Read findings from either reply shape:
        {"findings": [{"fact": ..., "source": ...}, ...]}
        {"facts": [...], "sources": [...]}   (paired by index)
    """
    items: list[Finding] = []

    raw_findings = payload.get("findings")
    if isinstance(raw_findings, list):
        for raw in raw_findings:
            if isinstance(raw, dict):
                fact = str(raw.get("fact") or "").strip()
                source = _clean_source(raw.get("source"))
            else:
                fact, source = str(raw).strip(), None
            if fact:
                items.append(Finding(fact=fact, source=source))
    else:
        facts = payload.get("facts") or []
        sources = payload.get("sources") or []
        if isinstance(facts, list):
            for index, raw_fact in enumerate(facts):
                fact = str(raw_fact).strip()
                if not fact:
                    continue
                source = None
                if isinstance(sources, list) and index < len(sources):
                    source = _clean_source(sources[index])
                items.append(Finding(fact=fact, source=source))

    return SegmentFindings(items=tuple(items[:limit]))


def score_findings(
    findings: SegmentFindings, self_reported: float | None = None,
) -> float:
    """Heuristic confidence, blended with the model's own if given."""
    if not findings:
        heuristic = 0.1
    else:
        count = len(findings)
        cited = sum(1 for f in findings.items if f.source)
        heuristic = 0.3 + 0.15 * min(count, 4) / 4 + 0.35 * cited / count

    if self_reported is not None:
        heuristic = (heuristic + self_reported) / 2
    return round(max(0.0, min(1.0, heuristic)), 4)


def _clean_source(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def _default(value, fallback):
    return value if value is not None else fallback


def _cache_key(fingerprint: str, segment: Segment) -> str:
    return segment_result_key(
        fingerprint, segment.id, segment.text, segment.dependencies,
    )
