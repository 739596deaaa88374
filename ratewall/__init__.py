"""Per-IP request rate limiting for async handlers, backed by a shared counter store."""

from ratewall.adapters.store import (
    AbstractCounterStore,
    ConnectionState,
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from ratewall.core.errors import (
    AppError,
    BadRequestAppError,
    RequestTimeoutAppError,
    StoreConnectionFailedError,
    StoreUnavailableError,
)
from ratewall.schemas.context import InvocationContext
from ratewall.services.limiter_gate import (
    AdmissionResult,
    LimiterGate,
    RateLimiterConfig,
    RequestIdentity,
    build_window_key,
    rate_limited,
)

__all__ = [
    "AbstractCounterStore",
    "AdmissionResult",
    "AppError",
    "BadRequestAppError",
    "ConnectionState",
    "InMemoryCounterStore",
    "InvocationContext",
    "LimiterGate",
    "RateLimiterConfig",
    "RedisCounterStore",
    "RequestIdentity",
    "RequestTimeoutAppError",
    "StoreConnectionFailedError",
    "StoreUnavailableError",
    "build_window_key",
    "create_counter_store",
    "rate_limited",
]
