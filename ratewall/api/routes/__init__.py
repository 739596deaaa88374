from __future__ import annotations

from ratewall.api.routes.health import router as health_router
from ratewall.api.routes.probe import router as probe_router

__all__ = ["health_router", "probe_router"]
