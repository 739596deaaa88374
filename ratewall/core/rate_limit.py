"""Rate limiting dependency for FastAPI routes.

This module wires the limiter gate into the HTTP layer:
- The gate lives on ``app.state.limiter_gate`` (installed by the app factory).
- A Starlette request is translated into an InvocationContext, so HTTP
  routes go through exactly the same admission path as wrapped handlers.
- The scope defaults to the endpoint function name, mirroring wrapped
  handlers where the scope is the handler name.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from fastapi import Request

from ratewall.core.config import LimiterSettings, settings
from ratewall.services.limiter_gate import AdmissionResult, LimiterGate, validate_scope

logger = logging.getLogger(__name__)


def resolve_client_ip(request: Request, *, trust_forwarded_for: bool) -> str | None:
    """Return the client address of a request.

    Args:
        request: Incoming request.
        trust_forwarded_for: Use the first X-Forwarded-For hop when present.

    Returns:
        The client IP, or None when the transport does not expose one.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    return request.client.host if request.client else None


def _limiter_settings(request: Request) -> LimiterSettings:
    return getattr(request.app.state, "limiter_settings", None) or settings.limiter


def build_invocation_context(request: Request) -> dict[str, Any]:
    """Translate a request into the gateway's invocation context shape.

    The ``http`` block is omitted when the client address is unknown, which
    the gate reports as a BadRequest.
    """
    source_ip = resolve_client_ip(
        request,
        trust_forwarded_for=_limiter_settings(request).trust_forwarded_for,
    )
    request_context: dict[str, Any] = {}
    if not source_ip:
        logger.warning("rate_limit.client_ip_unknown", extra={"request_path": request.url.path})
    else:
        request_context["http"] = {
            "sourceIp": source_ip,
            "method": request.method,
            "path": request.url.path,
            "userAgent": request.headers.get("user-agent"),
        }
    return {"isGnzContext": True, "requestContext": request_context}


def _scope_for(request: Request) -> str:
    endpoint = request.scope.get("endpoint")
    return getattr(endpoint, "__name__", None) or request.url.path


def get_limiter_gate(request: Request) -> LimiterGate:
    return request.app.state.limiter_gate


def enforce_rate_limit(scope: str | None = None) -> Callable[[Request], Awaitable[AdmissionResult | None]]:
    """Build a FastAPI dependency enforcing the per-IP limit.

    Usage:
        @router.get("/items", dependencies=[Depends(enforce_rate_limit())])

    Raises:
        ValueError: If ``scope`` contains ``:``.

    Raises (from the returned dependency):
        BadRequestAppError: Client address unknown or invalid limiter config.
        RequestTimeoutAppError: Limit reached; rendered as HTTP 429.
    """
    if scope is not None:
        validate_scope(scope)

    async def dependency(request: Request) -> AdmissionResult | None:
        if not _limiter_settings(request).enabled:
            return None

        gate = get_limiter_gate(request)
        result = await gate.admit(build_invocation_context(request), scope or _scope_for(request))
        request.state.admission = result
        return result

    return dependency
