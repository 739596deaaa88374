"""HTTP middleware for request ID propagation and access logging.

Every request gets a correlation id (taken from the configured header or
generated), stored in contextvars for the duration of the request so limiter
and store log lines can be tied back to it.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request, Response

from ratewall.core.config import settings
from ratewall.core.logging import clear_request_id, set_request_id

logger = logging.getLogger(__name__)


async def request_id_middleware(request: Request, call_next) -> Response:
    """Attach a request id to the context, the response and the access log.

    Side Effects:
        - Sets request_id in contextvars and clears it afterwards
        - Adds the request id header and X-Request-Duration-ms to the response
        - Emits one ``http.request_completed`` log line per request
    """

    log_settings = getattr(request.app.state, "log_settings", None) or settings.log
    header_name = log_settings.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "http.request_completed",
            extra={
                "request_method": request.method,
                "request_path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
    finally:
        clear_request_id()

    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response
