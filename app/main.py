# =============================================================================
# FastAPI Application - Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn app.main:app --reload
#
# Routers:
#   /search, /search/segment  → app/api/search.py
#   /history...               → app/api/history.py
#   /health                   → defined here
#
# DESIGN DECISION: Logging configured once, here.
# Every module logs through logging.getLogger(__name__). Only the
# application entry point touches handlers and levels.
#
# DESIGN DECISION: Tables created on startup only in debug mode.
# Production schemas are managed outside the app; local development
# gets a working database with no migration step.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from app.api import history, search
from app.config import settings
from app.models.responses import HealthResponse

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if settings.persistence_enabled and settings.debug:
        from app.db.engine import init_models

        try:
            await init_models()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Could not create tables on startup: %s", e)

    logger.info(
        "%s %s started (provider=%s, cache=%s, persistence=%s)",
        settings.app_name, settings.app_version, settings.llm_provider,
        settings.cache_backend, settings.persistence_enabled,
    )
    yield

    if settings.persistence_enabled:
        from app.db.engine import dispose_engine

        await dispose_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Agentic search that decomposes a query into a dependency graph of "
        "segments, executes them in parallel stages, and synthesizes one "
        "answer with confidence and sources."
    ),
    lifespan=lifespan,
)

app.include_router(search.router)
app.include_router(history.router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=settings.app_version,
        service=settings.app_name,
        llm_provider=settings.llm_provider,
        cache_backend=settings.cache_backend,
        persistence_enabled=settings.persistence_enabled,
    )
