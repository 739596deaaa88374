"""Per-identity admission control for request handlers.

Requests are counted per (source IP, scope) in calendar-minute windows kept in
a shared counter store:

1. The invocation context must identify the client, otherwise BadRequest.
2. window_seconds below one is a BadRequest for every request.
3. The window key is derived once from identity, scope and the current minute.
4. A stored count at or above the limit rejects the request; the handler
   never runs.
5. Otherwise the key is incremented and its expiry refreshed atomically.

Store failures in steps 4-5 are logged and the request is admitted anyway:
the limiter must never take the protected handler down with the store.

Windows align to wall-clock minutes, not to the first request, so a burst
straddling a minute boundary can be admitted up to twice the limit.
"""

from __future__ import annotations

import functools
import inspect
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from pydantic import ValidationError

from ratewall.adapters.store.base import AbstractCounterStore
from ratewall.adapters.store.factory import create_counter_store
from ratewall.core.config import DEFAULT_STORE_URL, LimiterSettings, StoreSettings, settings
from ratewall.core.errors import BadRequestAppError, RequestTimeoutAppError, StoreUnavailableError
from ratewall.core.logging import hash_identity
from ratewall.schemas.context import InvocationContext

logger = logging.getLogger(__name__)

WINDOW_GRANULARITY_SECONDS = 60
KEY_SEPARATOR = ":"

R = TypeVar("R")


@dataclass(frozen=True)
class RateLimiterConfig:
    """Admission policy of one gate.

    Attributes:
        store_address: Counter store URL used by ``LimiterGate.from_config``.
        limit: Maximum admitted requests per identity, scope and minute.
        window_seconds: Expiry (re)applied to the counter on every increment.
        key_prefix: Namespace of the window keys in the store.
    """

    store_address: str | None = DEFAULT_STORE_URL
    limit: int = 50
    window_seconds: int = 59
    key_prefix: str = "ratelimit"

    def __post_init__(self) -> None:
        # window_seconds is validated per request, not here.
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    @classmethod
    def from_settings(
        cls,
        limiter_settings: LimiterSettings | None = None,
        store_settings: StoreSettings | None = None,
    ) -> "RateLimiterConfig":
        limiter_cfg = limiter_settings or settings.limiter
        store_cfg = store_settings or settings.store
        return cls(
            store_address=store_cfg.url,
            limit=limiter_cfg.limit,
            window_seconds=limiter_cfg.window_seconds,
            key_prefix=limiter_cfg.key_prefix,
        )


@dataclass(frozen=True)
class RequestIdentity:
    source_ip: str
    scope: str


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of an admitted request.

    Attributes:
        allowed: Always True; rejections raise instead.
        key: Window key the request was charged to.
        limit: Configured limit.
        count: Counter value after the increment, None when unknown.
        remaining: Requests left in this window, None when unknown.
        reset_at: UNIX epoch seconds of the next window boundary.
        degraded: True when admitted without consulting the store.
    """

    allowed: bool
    key: str
    limit: int
    count: int | None
    remaining: int | None
    reset_at: int
    degraded: bool = False


def current_window(now: float) -> int:
    """Index of the calendar minute containing ``now`` (minutes since epoch)."""
    return int(now // WINDOW_GRANULARITY_SECONDS)


def window_reset_at(now: float) -> int:
    return (current_window(now) + 1) * WINDOW_GRANULARITY_SECONDS


def validate_scope(scope: str) -> str:
    """Reject scopes that would make window keys ambiguous.

    IPv6 addresses contain the key separator, so the scope must not: the key
    then parses unambiguously from the right (minute, scope, address).

    Raises:
        ValueError: If the scope is empty or contains ``:``.
    """
    if not scope or KEY_SEPARATOR in scope:
        raise ValueError(f"scope must be non-empty and must not contain {KEY_SEPARATOR!r}: {scope!r}")
    return scope


def build_window_key(identity: RequestIdentity, now: float, *, prefix: str = "ratelimit") -> str:
    """Compose the counter key for an identity in the minute containing ``now``.

    Examples:
        >>> build_window_key(RequestIdentity("10.0.0.1", "get_user"), 120.5)
        'ratelimit:10.0.0.1:get_user:2'
    """
    validate_scope(identity.scope)
    parts = [identity.source_ip, identity.scope, str(current_window(now))]
    if prefix:
        parts.insert(0, prefix)
    return KEY_SEPARATOR.join(parts)


def extract_identity(context: Any, scope: str) -> RequestIdentity:
    """Derive the request identity from an invocation context.

    Accepts an InvocationContext, a raw mapping in the gateway's shape
    (``{"isGnzContext": true, "requestContext": {"http": {"sourceIp": ...}}}``)
    or a host object exposing the same attributes.

    Raises:
        BadRequestAppError: If the context does not identify the client.
    """
    if isinstance(context, InvocationContext):
        return RequestIdentity(source_ip=context.source_ip, scope=scope)

    try:
        parsed = InvocationContext.model_validate(
            context,
            from_attributes=not isinstance(context, Mapping),
        )
    except ValidationError as exc:
        logger.warning(
            "rate_limit.invalid_context",
            extra={
                "scope": scope,
                "context_type": type(context).__name__,
                "error_count": exc.error_count(),
            },
        )
    else:
        return RequestIdentity(source_ip=parsed.source_ip, scope=scope)

    raise BadRequestAppError(
        code="invalid_invocation_context",
        message="Rate-limited handlers must receive an invocation context as their first parameter",
        details={"scope": scope},
    )


class LimiterGate:
    """Decide per request whether the wrapped handler may run.

    The gate holds no per-request state; all counting lives in the store, and
    one store instance is shared by every concurrent invocation.
    """

    def __init__(
        self,
        store: AbstractCounterStore,
        config: RateLimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or RateLimiterConfig()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: RateLimiterConfig,
        store_settings: StoreSettings | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "LimiterGate":
        """Build a gate over a new store pointed at ``config.store_address``.

        The store is not connected yet; call ``gate.store.connect()`` before
        serving. An unusable address yields a FAILED store and a gate that
        fails open.
        """
        store = create_counter_store(config.store_address, store_settings)
        return cls(store, config, clock=clock)

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    async def admit(self, context: Any, scope: str) -> AdmissionResult:
        """Charge one request to the caller's window or reject it.

        Args:
            context: Invocation context of the request.
            scope: Handler name partitioning the limit.

        Returns:
            AdmissionResult for the admitted request.

        Raises:
            BadRequestAppError: Unidentifiable caller, a scope containing
                ``:``, or window_seconds < 1.
            RequestTimeoutAppError: The caller reached the limit this minute.
        """
        identity = extract_identity(context, scope)
        cfg = self._config

        try:
            validate_scope(scope)
        except ValueError as exc:
            raise BadRequestAppError(
                code="invalid_scope",
                message=str(exc),
                details={"scope": scope},
            ) from exc

        if cfg.window_seconds < 1:
            raise BadRequestAppError(
                code="invalid_window",
                message="The refresh rate must be at least 1 second",
                details={"window_seconds": cfg.window_seconds, "scope": scope},
            )

        now = self._clock()
        key = build_window_key(identity, now, prefix=cfg.key_prefix)
        reset_at = window_reset_at(now)
        key_hash = hash_identity(identity.source_ip)

        try:
            count = await self._store.get(key)
        except StoreUnavailableError as exc:
            return self._admit_degraded(key, reset_at, key_hash, scope, exc)

        if count is not None and count >= cfg.limit:
            retry_after = max(0, int(math.ceil(reset_at - now)))
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "key_hash": key_hash,
                    "scope": scope,
                    "limit": cfg.limit,
                    "count": count,
                    "retry_after_s": retry_after,
                },
            )
            raise RequestTimeoutAppError(
                code="rate_limit_exceeded",
                message="Rate limit exceeded",
                details={
                    "limit": cfg.limit,
                    "scope": scope,
                    "retry_after": retry_after,
                    "reset_at": reset_at,
                },
            )

        try:
            count = await self._store.incr_and_expire(key, cfg.window_seconds)
        except StoreUnavailableError as exc:
            return self._admit_degraded(key, reset_at, key_hash, scope, exc)

        logger.debug(
            "rate_limit.allowed",
            extra={"key_hash": key_hash, "scope": scope, "limit": cfg.limit, "count": count},
        )
        return AdmissionResult(
            allowed=True,
            key=key,
            limit=cfg.limit,
            count=count,
            remaining=max(0, cfg.limit - count),
            reset_at=reset_at,
        )

    def _admit_degraded(
        self,
        key: str,
        reset_at: int,
        key_hash: str,
        scope: str,
        exc: StoreUnavailableError,
    ) -> AdmissionResult:
        logger.error(
            "rate_limit.store_unavailable",
            extra={
                "key_hash": key_hash,
                "scope": scope,
                "error_code": exc.code,
                "error_msg": exc.message,
                "store_state": self._store.state.value,
                "hint": "Check the counter store URL and that the store is reachable",
            },
        )
        return AdmissionResult(
            allowed=True,
            key=key,
            limit=self._config.limit,
            count=None,
            remaining=None,
            reset_at=reset_at,
            degraded=True,
        )

    def wrap(
        self,
        handler: Callable[..., R | Awaitable[R]],
        *,
        scope: str | None = None,
        context_position: int = 0,
    ) -> Callable[..., Awaitable[R]]:
        """Return an async handler that is admitted through this gate first.

        The handler receives the original arguments; its return value and
        exceptions pass through unchanged. Synchronous handlers are called
        directly, awaitable results are awaited.

        Args:
            handler: Function to protect.
            scope: Limit partition; defaults to the handler's ``__name__``.
            context_position: Index of the invocation context among the
                positional arguments (1 for methods called with ``self``).

        Raises:
            ValueError: If the scope contains ``:``.
        """
        label = validate_scope(scope or getattr(handler, "__name__", None) or type(handler).__name__)

        @functools.wraps(handler)
        async def rate_limited_handler(*args: Any, **kwargs: Any) -> R:
            if len(args) <= context_position:
                logger.warning(
                    "rate_limit.missing_context",
                    extra={"scope": label, "positional_args": len(args)},
                )
                raise BadRequestAppError(
                    code="invalid_invocation_context",
                    message="Rate-limited handlers must receive an invocation context as their first parameter",
                    details={"scope": label},
                )

            await self.admit(args[context_position], label)

            result = handler(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return rate_limited_handler


def rate_limited(
    gate: LimiterGate,
    *,
    scope: str | None = None,
    context_position: int = 0,
) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
    """Decorator form of :meth:`LimiterGate.wrap`.

    Example:
        >>> gate = LimiterGate(InMemoryCounterStore())  # doctest: +SKIP
        >>> @rate_limited(gate)                          # doctest: +SKIP
        ... async def get_user(context, user_id): ...
    """

    def decorator(handler: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
        return gate.wrap(handler, scope=scope, context_position=context_position)

    return decorator
