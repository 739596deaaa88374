"""Factory for creating counter store instances."""

from __future__ import annotations

from urllib.parse import urlsplit

from ratewall.adapters.store.base import AbstractCounterStore
from ratewall.adapters.store.in_memory import InMemoryCounterStore
from ratewall.adapters.store.redis_store import RedisCounterStore
from ratewall.core.config import DEFAULT_STORE_URL, StoreSettings, settings


def create_counter_store(
    url: str | None = None,
    store_settings: StoreSettings | None = None,
) -> AbstractCounterStore:
    """Instantiate the counter store selected by the URL scheme.

    ``memory://`` selects the in-process store; anything else is handed to
    redis-py, which understands ``redis://``, ``rediss://`` and ``unix://``.
    An unsupported scheme does not raise here: the Redis store logs it and
    starts out FAILED, so the limiter fails open.

    Args:
        url: Store URL; falls back to the configured STORE_URL.
        store_settings: Reconnect/timeout policy; defaults to global settings.

    Returns:
        AbstractCounterStore: Store instance, not yet connected.
    """
    cfg = store_settings or settings.store
    url = url or cfg.url or DEFAULT_STORE_URL

    if urlsplit(url).scheme == "memory":
        return InMemoryCounterStore()

    return RedisCounterStore(
        url,
        max_retries=cfg.max_retries,
        retry_delay_seconds=cfg.retry_delay_ms / 1000,
        socket_timeout=cfg.socket_timeout_seconds,
        socket_connect_timeout=cfg.socket_connect_timeout_seconds,
    )
