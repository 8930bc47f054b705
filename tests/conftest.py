from __future__ import annotations

import pytest

from app.services.cache import InMemoryCache
from app.services.persistence import InMemoryPersistenceSink


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryCache:
    return InMemoryCache(clock=clock)


@pytest.fixture
def sink() -> InMemoryPersistenceSink:
    return InMemoryPersistenceSink()
