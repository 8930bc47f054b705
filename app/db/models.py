# =============================================================================
# Database Models - SQLAlchemy ORM
# =============================================================================
#
# Append-only execution history for the search engine. Nothing here is
# read back by the engine itself; the cache handles memoization. These
# tables exist for the history endpoints and for offline analysis of how
# queries were segmented and executed.
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────┐   ┌──────────────────────────┐
# │ query_segmentations  │   │ segment_executions       │
# ├──────────────────────┤   ├──────────────────────────┤
# │ id (PK)              │   │ id (PK)                  │
# │ search_id            │   │ search_id                │
# │ fingerprint          │   │ fingerprint              │
# │ segments (jsonb)     │   │ segment_id, attempt      │
# │ graph (jsonb)        │   │ success, confidence      │
# │ cached, fallback     │   │ findings (jsonb)         │
# └──────────────────────┘   │ tokens, time, escalated  │
#                            └──────────────────────────┘
# ┌──────────────────────┐   ┌──────────────────────────┐
# │ coordination_events  │   │ search_history           │
# ├──────────────────────┤   ├──────────────────────────┤
# │ consumer / producer  │   │ user_id, query_text      │
# │ stage, confidence    │   │ answer, confidence       │
# └──────────────────────┘   │ sources (jsonb), metrics │
#                            └──────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Rows are keyed by both `fingerprint` (the query+model hash shared
#    by every run of the same question) and `search_id` (one run). The
#    fingerprint groups repeat questions; the search_id ties a history
#    row to exactly the executions of that run.
#
# 2. JSONB for segment lists, findings and sources. They are always
#    read whole and their shape follows the engine dataclasses.
#
# 3. No foreign keys between these tables. Writes are fire-and-forget
#    from independent tasks, so no write may depend on another landing.
# =============================================================================

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON

# JSONB on PostgreSQL, plain JSON elsewhere (e.g. SQLite in local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class QuerySegmentation(Base):
    """One segmentation produced (or served from cache) for a search."""

    __tablename__ = "query_segmentations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    segment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_count: Mapped[int] = mapped_column(Integer, nullable=False)

    # Segment.to_dict() list and ExecutionGraph.to_dict()
    segments: Mapped[list] = mapped_column(JSONType, nullable=False)
    graph: Mapped[dict] = mapped_column(JSONType, nullable=False)

    cached: Mapped[bool] = mapped_column(Boolean, default=False)
    fallback: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_query_segmentations_fingerprint", "fingerprint"),
    )


class SegmentExecution(Base):
    """
    One execution attempt of one segment.

    An escalated segment has two rows (attempt 1 and 2). Failed attempts
    are recorded too, so the history of a segment is complete.
    """

    __tablename__ = "segment_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    segment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    findings: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    was_escalated: Mapped[bool] = mapped_column(Boolean, default=False)
    coordination_events: Mapped[int] = mapped_column(Integer, default=0)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_segment_executions_fingerprint", "fingerprint"),
        Index("ix_segment_executions_search_id", "search_id"),
    )


class CoordinationEventRecord(Base):
    """A dependent segment consumed a dependency's findings."""

    __tablename__ = "coordination_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    consumer_segment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    producer_segment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    stage: Mapped[int] = mapped_column(Integer, nullable=False)
    producer_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    facts_shared: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_coordination_events_search_id", "search_id"),
    )


class SearchHistory(Base):
    """
    One completed search: the synthesized answer plus run metrics.

    Written once per search, after synthesis.
    """

    __tablename__ = "search_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str] = mapped_column(String(200), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)

    answer: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    model_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    coverage: Mapped[float | None] = mapped_column(Float, nullable=True)
    sources: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    key_points: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    fallback: Mapped[str | None] = mapped_column(String(50), nullable=True)

    segment_count: Mapped[int] = mapped_column(Integer, default=0)
    stage_count: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    cache_hits: Mapped[int] = mapped_column(Integer, default=0)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_search_history_user_created", "user_id", "created_at"),
        Index("ix_search_history_fingerprint", "fingerprint"),
    )
