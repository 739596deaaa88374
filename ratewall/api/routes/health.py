from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    The service reports "ok" even when the counter store is down: the limiter
    fails open, so a store outage degrades enforcement, not availability.

    Returns:
        dict: ``status`` plus the counter store connection state.
    """

    gate = getattr(request.app.state, "limiter_gate", None)
    store_state = gate.store.state.value if gate is not None else "unconfigured"
    return {"status": "ok", "store": store_state}
