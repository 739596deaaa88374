"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any import that loads settings.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("STORE_URL", "memory://")
os.environ.setdefault("LIMITER_LIMIT", "50")
os.environ.setdefault("LIMITER_WINDOW_SECONDS", "59")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from ratewall.adapters.store.in_memory import InMemoryCounterStore
from ratewall.schemas.context import InvocationContext


class FakeClock:
    """Deterministic clock used to move requests across window boundaries."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    # 1_700_000_000 is 20 seconds into a minute (1_700_000_000 % 60 == 20).
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def context() -> InvocationContext:
    return InvocationContext.for_source_ip("203.0.113.7")
