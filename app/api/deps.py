# =============================================================================
# API Dependencies - Engine Collaborators via FastAPI DI
# =============================================================================
#
# The search endpoints need three collaborators:
#
# 1. get_provider_factory() - turns an optional ModelSelection into an
#    LLMProvider (resolved once, at the boundary)
# 2. get_cache()            - segmentation / segment result cache
# 3. get_sink()             - execution history
#
# DESIGN DECISION: FastAPI dependencies (not module globals in handlers).
# Tests swap each one through app.dependency_overrides and run the full
# pipeline against a scripted model, an InMemoryCache and an
# InMemoryPersistenceSink: no network, no Redis, no PostgreSQL.
# =============================================================================

from __future__ import annotations

from collections.abc import Callable

from app.models.requests import ModelSelection
from app.services.cache import Cache
from app.services.cache import get_cache as _get_cache
from app.services.llm import LLMProvider, create_provider, get_llm_provider
from app.services.persistence import PersistenceSink
from app.services.persistence import get_sink as _get_sink

ProviderFactory = Callable[[ModelSelection | None], LLMProvider]


def _default_provider_factory(selection: ModelSelection | None) -> LLMProvider:
    """
    Raises:
        ValueError: unknown provider or no API key configured for it.
    """
    if selection is None:
        return get_llm_provider()
    return create_provider(selection.to_model_config())


def get_provider_factory() -> ProviderFactory:
    return _default_provider_factory


def get_cache() -> Cache:
    return _get_cache()


def get_sink() -> PersistenceSink:
    return _get_sink()
