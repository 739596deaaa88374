"""Application-level exception types.

Only BadRequestAppError and RequestTimeoutAppError are meant to reach the
caller of a rate-limited handler. Store errors stay inside the limiter gate,
which logs them and admits the request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    limit: int
    count: int
    window_seconds: int
    retry_after: float
    reset_at: int
    scope: str
    store_state: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class BadRequestAppError(AppError):
    """Raised for a malformed invocation context or an invalid limiter config."""


class RequestTimeoutAppError(AppError):
    """Raised when the caller exceeded its request budget for the current minute."""


class StoreUnavailableError(AppError):
    """Raised when the counter store cannot serve an operation."""


class StoreConnectionFailedError(StoreUnavailableError):
    """Raised once the reconnect budget is exhausted; the store stays down."""
