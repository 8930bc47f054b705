# =============================================================================
# Cache - Segmentation and Segment Result Memoization
# =============================================================================
#
# Two things are worth caching in the search pipeline:
#   1. The segmentation of a query (one decomposition call saved)
#   2. Each confident segment result (one or two model calls saved)
#
# Both are keyed by the query fingerprint: a SHA-256 of the normalised
# query text plus the model identity. The same question asked of a
# different model is a different cache entry.
#
# KEY LAYOUT:
#   segmentation:<fingerprint>
#   segment-result:<fingerprint>:<segment_id>
#
# DESIGN DECISION: Cache as an injected collaborator.
# The segmenter and runner receive a Cache instance rather than reaching
# for a global client. Tests hand in an InMemoryCache with a fake clock;
# production uses RedisCache on Redis db 2.
#
# DESIGN DECISION: Graceful degradation. A Redis outage raises
# CacheError, which callers log and treat as a miss. The cache can make
# a search faster but never makes it fail.
# =============================================================================

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Callable, Protocol

from app.config import settings

logger = logging.getLogger(__name__)


class CacheMiss(Exception):
    """No live entry exists for the key."""


class CacheError(Exception):
    """The cache backend could not be reached or returned bad data."""


# ---------------------------------------------------------------------------
# Fingerprints and Keys
# ---------------------------------------------------------------------------


def normalize_query(text: str) -> str:
    """Lower-case and collapse runs of whitespace."""
    return " ".join(text.lower().split())


def query_fingerprint(text: str, model_id: str) -> str:
    """
    Stable hash of (normalised query text, model identity).

    "What is  X?" and "what is x?" share a fingerprint for one model,
    but not across models.
    """
    material = f"{normalize_query(text)}\x00{model_id}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def segmentation_key(fingerprint: str) -> str:
    return f"segmentation:{fingerprint}"


def segment_result_key(
    fingerprint: str,
    segment_id: str,
    text: str,
    dependencies: tuple[str, ...] | list[str] = (),
) -> str:
    """
    Key for one segment's cached result.

    Segment ids repeat across decompositions of the same query ("1",
    "2", ...), so the segment text and its dependency ids are hashed in.
    """
    material = "\x00".join([text, *sorted(dependencies)])
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"segment-result:{fingerprint}:{segment_id}:{digest}"


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class Cache(Protocol):
    """Key/value store with per-entry TTL. Payloads are JSON-compatible."""

    async def get(self, key: str) -> dict[str, Any]:
        """Return the live payload, or raise CacheMiss."""
        ...

    async def put(self, key: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-process dict
# ---------------------------------------------------------------------------


class InMemoryCache:
    """
    Dict-backed cache for tests and single-worker deployments.

    Entries are (expires_at, payload). Expired entries are dropped on
    read. The clock is injectable so TTL behaviour is testable without
    sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}

    async def get(self, key: str) -> dict[str, Any]:
        entry = self._entries.get(key)
        if entry is None:
            raise CacheMiss(key)
        expires_at, payload = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            raise CacheMiss(key)
        return payload

    async def put(self, key: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, payload)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Implementation 2: Redis
# ---------------------------------------------------------------------------


class RedisCache:
    """
    Redis-backed cache shared by all API workers.

    Values are JSON strings written with SET PX so Redis handles expiry.
    """

    def __init__(self, url: str | None = None, client=None) -> None:
        self._url = url or settings.cache_redis_url
        self._client = client

    def _get_client(self):
        """Lazily create the async Redis client."""
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> dict[str, Any]:
        from redis.exceptions import RedisError

        try:
            raw = await self._get_client().get(key)
        except RedisError as e:
            raise CacheError(f"Redis GET failed for {key}: {e}") from e

        if raw is None:
            raise CacheMiss(key)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CacheError(f"Corrupt cache entry at {key}") from e

    async def put(self, key: str, payload: dict[str, Any], ttl_seconds: float) -> None:
        from redis.exceptions import RedisError

        try:
            await self._get_client().set(
                key, json.dumps(payload), px=max(1, int(ttl_seconds * 1000)),
            )
        except RedisError as e:
            raise CacheError(f"Redis SET failed for {key}: {e}") from e


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_cache: InMemoryCache | RedisCache | None = None


def get_cache() -> InMemoryCache | RedisCache:
    """Return the configured cache backend (lazy singleton)."""
    global _cache
    if _cache is None:
        if settings.cache_backend == "memory":
            _cache = InMemoryCache()
        elif settings.cache_backend == "redis":
            _cache = RedisCache()
        else:
            raise ValueError(
                f"Unknown cache_backend '{settings.cache_backend}'. "
                "Supported: 'redis', 'memory'"
            )
        logger.info("Cache backend: %s", settings.cache_backend)
    return _cache
