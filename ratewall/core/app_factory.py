"""Application factory for the FastAPI app.

Centralizes app construction (middleware, handlers, routers) and owns the
counter store lifecycle: the store is connected on startup, shared by every
request through ``app.state.limiter_gate`` and closed on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from ratewall.adapters.store.base import AbstractCounterStore
from ratewall.api.routes import health_router, probe_router
from ratewall.core.config import Settings, settings as default_settings
from ratewall.core.exception_handlers import setup_exception_handlers
from ratewall.core.logging import configure_logging
from ratewall.core.middleware import request_id_middleware
from ratewall.services.limiter_gate import LimiterGate, RateLimiterConfig

logger = logging.getLogger(__name__)


def create_app(
    *,
    app_settings: Settings | None = None,
    store: AbstractCounterStore | None = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to build from; defaults to the global settings.
        store: Pre-built counter store (tests); otherwise built from STORE_URL.
        configure_logs: Install the JSON logging configuration.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    if configure_logs:
        configure_logging(cfg.log)

    limiter_config = RateLimiterConfig.from_settings(cfg.limiter, cfg.store)
    if store is None:
        gate = LimiterGate.from_config(limiter_config, cfg.store)
    else:
        gate = LimiterGate(store, limiter_config)
    counter_store = gate.store

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await counter_store.connect()
        logger.info(
            "limiter.started",
            extra={
                "store": type(counter_store).__name__,
                "store_state": counter_store.state.value,
                "limit": gate.config.limit,
                "window_s": gate.config.window_seconds,
            },
        )
        try:
            yield
        finally:
            await counter_store.aclose()
            logger.info("limiter.stopped")

    app = FastAPI(
        title="ratewall",
        description=(
            "Per-IP, per-handler request limiting over calendar-minute windows "
            "backed by a shared Redis counter store. Fails open when the store "
            "is unavailable."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.limiter_gate = gate
    app.state.limiter_settings = cfg.limiter
    app.state.log_settings = cfg.log

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(probe_router, prefix="/v1")
    app.include_router(health_router)

    return app
