# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - Base: SQLAlchemy declarative base for ORM models
#   - QuerySegmentation, SegmentExecution, CoordinationEventRecord,
#     SearchHistory: the audit trail of every search
# =============================================================================
