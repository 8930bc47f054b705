# =============================================================================
# Persistence Sink - Execution History
# =============================================================================
#
# The engine reports what it did through four calls:
#   record_segmentation       - once per search (fresh or cached plan)
#   record_segment_execution  - once per attempt (escalation = 2 rows)
#   record_coordination_event - once per dependency consumed
#   record_synthesis          - once per search, with run metrics
#
# DESIGN DECISION: Fire-and-forget from the engine's perspective.
# The SQL sink raises PersistenceError on failure. Engine call sites go
# through record_safely(), which logs and swallows it. A broken database
# costs us history, never an answer.
#
# DESIGN DECISION: Self-managed sessions.
# Each write opens its own session from the factory and commits
# explicitly. Sibling segment tasks write concurrently, so they cannot
# share one session.
#
# The SQL sink also serves the history read endpoints. The in-memory sink
# mirrors those reads so the API works with persistence disabled.
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.db.models import (
    CoordinationEventRecord,
    QuerySegmentation,
    SearchHistory,
    SegmentExecution,
)

if TYPE_CHECKING:
    from app.agents.types import (
        CoordinationEvent,
        ExecutionGraph,
        Segment,
        SegmentResult,
        SynthesizedAnswer,
    )

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A history record could not be written or read."""


# asyncpg raises OSError subclasses (ConnectionRefusedError, TimeoutError)
# at connect time, outside SQLAlchemy's exception wrapping.
_DB_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class PersistenceSink(Protocol):
    """Append-only history of segmentations, executions and answers."""

    async def record_segmentation(
        self,
        fingerprint: str,
        segments: list[Segment],
        graph: ExecutionGraph,
        *,
        cached: bool = False,
        fallback: bool = False,
        search_id: str | None = None,
    ) -> None:
        ...

    async def record_segment_execution(
        self,
        fingerprint: str,
        result: SegmentResult,
        *,
        search_id: str | None = None,
    ) -> None:
        ...

    async def record_coordination_event(
        self,
        fingerprint: str,
        event: CoordinationEvent,
        *,
        search_id: str | None = None,
    ) -> None:
        ...

    async def record_synthesis(
        self,
        fingerprint: str,
        answer: SynthesizedAnswer,
        *,
        user_id: str,
        query_text: str,
        metrics: dict[str, Any] | None = None,
        search_id: str | None = None,
    ) -> None:
        ...


async def record_safely(write: Awaitable[None], what: str) -> None:
    """Await a sink write; log and drop PersistenceError."""
    try:
        await write
    except PersistenceError as e:
        logger.warning("Failed to persist %s: %s", what, e)


# ---------------------------------------------------------------------------
# Implementation 1: SQLAlchemy (PostgreSQL)
# ---------------------------------------------------------------------------


class SqlAlchemyPersistenceSink:
    """Writes history rows through the async session factory."""

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    def _factory(self):
        if self._session_factory is None:
            from app.db.engine import get_session_factory
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _add(self, row: Any) -> None:
        try:
            async with self._factory()() as session:
                session.add(row)
                await session.commit()
        except _DB_ERRORS as e:
            raise PersistenceError(
                f"{type(row).__name__} insert failed: {e}"
            ) from e

    async def record_segmentation(
        self,
        fingerprint: str,
        segments: list[Segment],
        graph: ExecutionGraph,
        *,
        cached: bool = False,
        fallback: bool = False,
        search_id: str | None = None,
    ) -> None:
        await self._add(QuerySegmentation(
            search_id=search_id,
            fingerprint=fingerprint,
            segment_count=len(segments),
            stage_count=graph.stage_count,
            segments=[s.to_dict() for s in segments],
            graph=graph.to_dict(),
            cached=cached,
            fallback=fallback,
        ))

    async def record_segment_execution(
        self,
        fingerprint: str,
        result: SegmentResult,
        *,
        search_id: str | None = None,
    ) -> None:
        await self._add(SegmentExecution(
            search_id=search_id,
            fingerprint=fingerprint,
            segment_id=result.segment_id,
            attempt=result.attempt,
            success=result.success,
            confidence=result.confidence,
            findings=result.findings.to_list(),
            error=result.error,
            tokens_used=result.tokens_used,
            execution_time_ms=result.execution_time_ms,
            was_escalated=result.was_escalated,
            coordination_events=result.coordination_events,
            model=result.model,
        ))

    async def record_coordination_event(
        self,
        fingerprint: str,
        event: CoordinationEvent,
        *,
        search_id: str | None = None,
    ) -> None:
        await self._add(CoordinationEventRecord(
            search_id=search_id,
            fingerprint=fingerprint,
            consumer_segment_id=event.consumer,
            producer_segment_id=event.producer,
            stage=event.stage,
            producer_confidence=event.producer_confidence,
            facts_shared=event.facts_shared,
        ))

    async def record_synthesis(
        self,
        fingerprint: str,
        answer: SynthesizedAnswer,
        *,
        user_id: str,
        query_text: str,
        metrics: dict[str, Any] | None = None,
        search_id: str | None = None,
    ) -> None:
        metrics = metrics or {}
        await self._add(SearchHistory(
            search_id=search_id,
            user_id=user_id,
            fingerprint=fingerprint,
            query_text=query_text,
            answer=answer.answer,
            confidence=answer.confidence,
            model_confidence=answer.model_confidence,
            coverage=answer.coverage,
            sources=[s.to_dict() for s in answer.sources],
            key_points=list(answer.key_points),
            fallback=answer.fallback,
            segment_count=metrics.get("segment_count", 0),
            stage_count=metrics.get("stages_executed", 0),
            total_tokens=metrics.get("total_tokens", 0),
            execution_time_ms=metrics.get("total_execution_time_ms", 0),
            cache_hits=metrics.get("cache_hits", 0),
            cancelled=metrics.get("cancelled", False),
            model=answer.model,
        ))

    # -----------------------------------------------------------------------
    # History reads
    # -----------------------------------------------------------------------

    async def list_history(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> list[dict[str, Any]]:
        """A user's searches, newest first."""
        stmt = (
            select(SearchHistory)
            .where(SearchHistory.user_id == user_id)
            .order_by(SearchHistory.created_at.desc(), SearchHistory.id.desc())
            .limit(limit)
            .offset(offset)
        )
        try:
            async with self._factory()() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except _DB_ERRORS as e:
            raise PersistenceError(f"history query failed: {e}") from e
        return [_history_to_dict(row) for row in rows]

    async def get_history(self, history_id: int) -> dict[str, Any] | None:
        """One search with the execution attempts of that run."""
        try:
            async with self._factory()() as session:
                row = await session.get(SearchHistory, history_id)
                if row is None:
                    return None
                executions: list[SegmentExecution] = []
                if row.search_id:
                    stmt = (
                        select(SegmentExecution)
                        .where(SegmentExecution.search_id == row.search_id)
                        .order_by(SegmentExecution.id)
                    )
                    executions = list((await session.execute(stmt)).scalars().all())
        except _DB_ERRORS as e:
            raise PersistenceError(f"history lookup failed: {e}") from e

        entry = _history_to_dict(row)
        entry["executions"] = [_execution_to_dict(e) for e in executions]
        return entry

    async def history_stats(self, user_id: str | None = None) -> dict[str, Any]:
        """Aggregate counts over search_history (optionally one user)."""
        stmt = select(
            func.count(SearchHistory.id),
            func.avg(SearchHistory.confidence),
            func.coalesce(func.sum(SearchHistory.total_tokens), 0),
            func.avg(SearchHistory.execution_time_ms),
            func.coalesce(func.sum(SearchHistory.cache_hits), 0),
        )
        if user_id is not None:
            stmt = stmt.where(SearchHistory.user_id == user_id)
        try:
            async with self._factory()() as session:
                count, avg_conf, tokens, avg_ms, hits = (
                    await session.execute(stmt)
                ).one()
        except _DB_ERRORS as e:
            raise PersistenceError(f"history stats failed: {e}") from e

        return {
            "total_searches": count or 0,
            "avg_confidence": round(float(avg_conf), 4) if avg_conf is not None else None,
            "total_tokens": int(tokens or 0),
            "avg_execution_time_ms": round(float(avg_ms)) if avg_ms is not None else None,
            "total_cache_hits": int(hits or 0),
        }


def _history_to_dict(row: SearchHistory) -> dict[str, Any]:
    return {
        "id": row.id,
        "search_id": row.search_id,
        "user_id": row.user_id,
        "fingerprint": row.fingerprint,
        "query_text": row.query_text,
        "answer": row.answer,
        "confidence": row.confidence,
        "model_confidence": row.model_confidence,
        "coverage": row.coverage,
        "sources": row.sources or [],
        "key_points": row.key_points or [],
        "fallback": row.fallback,
        "segment_count": row.segment_count,
        "stage_count": row.stage_count,
        "total_tokens": row.total_tokens,
        "execution_time_ms": row.execution_time_ms,
        "cache_hits": row.cache_hits,
        "cancelled": row.cancelled,
        "model": row.model,
        "created_at": row.created_at,
    }


def _execution_to_dict(row: SegmentExecution) -> dict[str, Any]:
    return {
        "segment_id": row.segment_id,
        "attempt": row.attempt,
        "success": row.success,
        "confidence": row.confidence,
        "findings": row.findings or [],
        "error": row.error,
        "tokens_used": row.tokens_used,
        "execution_time_ms": row.execution_time_ms,
        "was_escalated": row.was_escalated,
        "coordination_events": row.coordination_events,
        "model": row.model,
    }


# ---------------------------------------------------------------------------
# Implementation 2: In-memory
# ---------------------------------------------------------------------------


class InMemoryPersistenceSink:
    """
    Keeps every record in lists. Used by tests and when
    persistence_enabled=False.
    """

    def __init__(self) -> None:
        self.segmentations: list[dict[str, Any]] = []
        self.executions: list[dict[str, Any]] = []
        self.coordination_events: list[dict[str, Any]] = []
        self.history: list[dict[str, Any]] = []
        self._ids = itertools.count(1)

    async def record_segmentation(
        self,
        fingerprint: str,
        segments: list[Segment],
        graph: ExecutionGraph,
        *,
        cached: bool = False,
        fallback: bool = False,
        search_id: str | None = None,
    ) -> None:
        self.segmentations.append({
            "search_id": search_id,
            "fingerprint": fingerprint,
            "segments": [s.to_dict() for s in segments],
            "graph": graph.to_dict(),
            "cached": cached,
            "fallback": fallback,
        })

    async def record_segment_execution(
        self,
        fingerprint: str,
        result: SegmentResult,
        *,
        search_id: str | None = None,
    ) -> None:
        record = result.to_dict()
        record.update(search_id=search_id, fingerprint=fingerprint)
        self.executions.append(record)

    async def record_coordination_event(
        self,
        fingerprint: str,
        event: CoordinationEvent,
        *,
        search_id: str | None = None,
    ) -> None:
        record = event.to_dict()
        record.update(search_id=search_id, fingerprint=fingerprint)
        self.coordination_events.append(record)

    async def record_synthesis(
        self,
        fingerprint: str,
        answer: SynthesizedAnswer,
        *,
        user_id: str,
        query_text: str,
        metrics: dict[str, Any] | None = None,
        search_id: str | None = None,
    ) -> None:
        metrics = metrics or {}
        self.history.append({
            "id": next(self._ids),
            "search_id": search_id,
            "user_id": user_id,
            "fingerprint": fingerprint,
            "query_text": query_text,
            "answer": answer.answer,
            "confidence": answer.confidence,
            "model_confidence": answer.model_confidence,
            "coverage": answer.coverage,
            "sources": [s.to_dict() for s in answer.sources],
            "key_points": list(answer.key_points),
            "fallback": answer.fallback,
            "segment_count": metrics.get("segment_count", 0),
            "stage_count": metrics.get("stages_executed", 0),
            "total_tokens": metrics.get("total_tokens", 0),
            "execution_time_ms": metrics.get("total_execution_time_ms", 0),
            "cache_hits": metrics.get("cache_hits", 0),
            "cancelled": metrics.get("cancelled", False),
            "model": answer.model,
            "created_at": datetime.now(timezone.utc),
        })

    def executions_for(self, segment_id: str) -> list[dict[str, Any]]:
        return [e for e in self.executions if e["segment_id"] == segment_id]

    async def list_history(
        self, user_id: str, limit: int = 20, offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [h for h in reversed(self.history) if h["user_id"] == user_id]
        return rows[offset:offset + limit]

    async def get_history(self, history_id: int) -> dict[str, Any] | None:
        for row in self.history:
            if row["id"] == history_id:
                entry = dict(row)
                entry["executions"] = [
                    e for e in self.executions
                    if row["search_id"] and e["search_id"] == row["search_id"]
                ]
                return entry
        return None

    async def history_stats(self, user_id: str | None = None) -> dict[str, Any]:
        rows = [
            h for h in self.history
            if user_id is None or h["user_id"] == user_id
        ]
        if not rows:
            return {
                "total_searches": 0,
                "avg_confidence": None,
                "total_tokens": 0,
                "avg_execution_time_ms": None,
                "total_cache_hits": 0,
            }
        return {
            "total_searches": len(rows),
            "avg_confidence": round(
                sum(h["confidence"] for h in rows) / len(rows), 4,
            ),
            "total_tokens": sum(h["total_tokens"] for h in rows),
            "avg_execution_time_ms": round(
                sum(h["execution_time_ms"] for h in rows) / len(rows),
            ),
            "total_cache_hits": sum(h["cache_hits"] for h in rows),
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_sink: SqlAlchemyPersistenceSink | InMemoryPersistenceSink | None = None


def get_sink() -> SqlAlchemyPersistenceSink | InMemoryPersistenceSink:
    """Return the configured sink (lazy singleton)."""
    global _sink
    if _sink is None:
        if settings.persistence_enabled:
            _sink = SqlAlchemyPersistenceSink()
        else:
            _sink = InMemoryPersistenceSink()
        logger.info("Persistence sink: %s", type(_sink).__name__)
    return _sink
