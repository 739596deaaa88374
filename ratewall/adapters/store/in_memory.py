"""In-memory counter store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Coroutine-safe: an asyncio lock serializes increment+expire per process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from ratewall.adapters.store.base import AbstractCounterStore, ConnectionState
from ratewall.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    count: int
    expires_at: float


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store kept in a dict, for tests and single-process development.

    Expired keys are evicted lazily on access, so an expired counter reads as
    absent exactly like a Redis key whose TTL ran out.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: dict[str, _Entry] = {}

    def _live_entry(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def _ensure_open(self) -> None:
        if self._state is ConnectionState.CLOSED:
            raise StoreUnavailableError(
                code="store_closed",
                message="The counter store has been closed",
            )

    async def connect(self) -> None:
        if self._state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.CONNECTED)

    async def get(self, key: str) -> int | None:
        self._ensure_open()
        async with self._lock:
            entry = self._live_entry(key)
            return entry.count if entry else None

    async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be >= 1")
        self._ensure_open()

        async with self._lock:
            entry = self._live_entry(key)
            now = self._clock()
            if entry is None:
                entry = _Entry(count=0, expires_at=now + ttl_seconds)
                self._entries[key] = entry
            entry.count += 1
            entry.expires_at = now + ttl_seconds
            return entry.count

    def ttl(self, key: str) -> float | None:
        """Seconds until key expires, or None when absent."""
        entry = self._live_entry(key)
        if entry is None:
            return None
        return entry.expires_at - self._clock()

    async def aclose(self) -> None:
        async with self._lock:
            self._entries.clear()
        self._set_state(ConnectionState.CLOSED)
