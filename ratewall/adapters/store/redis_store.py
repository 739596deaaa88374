"""Redis-backed counter store with a bounded reconnect policy.

The store owns one redis-py asyncio client for the lifetime of the limiter.
redis-py's built-in command retry is disabled: reconnects are driven here so
that every attempt is logged, observable through state listeners, and capped.

State transitions:
    CONNECTING -> CONNECTED            successful PING
    CONNECTED  -> RETRYING             transport failure on any command
    RETRYING   -> CONNECTED            a reconnect PING succeeded
    RETRYING   -> FAILED               reconnect budget exhausted (terminal)
    *          -> CLOSED               aclose()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ratewall.adapters.store.base import AbstractCounterStore, ConnectionState
from ratewall.core.errors import StoreConnectionFailedError, StoreUnavailableError
from ratewall.core.logging import redact_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that mean the connection itself is gone, as opposed to a command error.
TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    RedisConnectionError,
    RedisTimeoutError,
    OSError,
)


class RedisCounterStore(AbstractCounterStore):
    """Counter store on top of Redis GET and MULTI{INCR; EXPIRE}.

    Construction never raises. A client that cannot even be built (bad URL,
    unknown scheme) leaves the store FAILED, and every operation then raises
    StoreConnectionFailedError without touching the network.
    """

    def __init__(
        self,
        url: str,
        *,
        max_retries: int = 5,
        retry_delay_seconds: float = 1.0,
        socket_timeout: float = 2.0,
        socket_connect_timeout: float = 2.0,
        client: aioredis.Redis | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__()
        self._url = url
        self._max_retries = max_retries
        self._retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self._reconnect_lock = asyncio.Lock()
        self._retry_count = 0
        self._generation = 0
        self._terminal_error: StoreConnectionFailedError | None = None
        self._client: aioredis.Redis | None = client

        if self._client is not None:
            return
        try:
            self._client = aioredis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_connect_timeout,
                retry_on_timeout=False,
                retry=Retry(NoBackoff(), 0),
            )
        except (ValueError, RedisError) as exc:
            logger.error(
                "store.client_init_failed",
                extra={
                    "store_url": redact_url(url),
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "hint": "Check the store URL passed to the rate limiter",
                },
            )
            self._terminal_error = StoreConnectionFailedError(
                code="store_connection_failed",
                message=f"Could not create a client for {redact_url(url)}",
            )
            self._set_state(ConnectionState.FAILED, exc)

    @property
    def url(self) -> str | None:
        """Store URL with credentials masked."""
        return redact_url(self._url)

    async def connect(self) -> None:
        if not self.available or self._client is None:
            return
        generation = self._generation
        try:
            await self._client.ping()
        except (RedisError, *TRANSPORT_ERRORS) as exc:
            logger.warning(
                "store.connect_failed",
                extra={"store_url": self.url, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            try:
                await self._reconnect(exc, generation)
            except StoreConnectionFailedError:
                # Already logged and signalled; the gate fails open from here on.
                return
            return
        self._set_state(ConnectionState.CONNECTED)

    async def get(self, key: str) -> int | None:
        raw = await self._execute("get", lambda: self._client.get(key))
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise StoreUnavailableError(
                code="store_bad_counter",
                message=f"Counter under {key!r} is not an integer",
            ) from exc

    async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
        async def transaction() -> int:
            async with self._client.pipeline(transaction=True) as pipe:
                count, _ = await pipe.incr(key).expire(key, ttl_seconds).execute()
            return int(count)

        return await self._execute("incr_and_expire", transaction)

    async def aclose(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        if self._state is not ConnectionState.FAILED:
            await self._disconnect()
        self._set_state(ConnectionState.CLOSED)

    async def _execute(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a store command, reconnecting once on a transport failure."""
        self._raise_if_unavailable()
        generation = self._generation
        try:
            return await call()
        except TRANSPORT_ERRORS as exc:
            logger.warning(
                "store.command_failed",
                extra={"operation": operation, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            await self._reconnect(exc, generation)
        except RedisError as exc:
            raise StoreUnavailableError(
                code="store_command_failed",
                message=f"Store command {operation} failed: {exc}",
            ) from exc

        try:
            return await call()
        except (RedisError, *TRANSPORT_ERRORS) as exc:
            raise StoreUnavailableError(
                code="store_command_failed",
                message=f"Store command {operation} failed after reconnect: {exc}",
            ) from exc

    def _raise_if_unavailable(self) -> None:
        if self._state is ConnectionState.FAILED:
            raise self._terminal_error or StoreConnectionFailedError(
                code="store_connection_failed",
                message="The counter store connection has failed",
            )
        if self._state is ConnectionState.CLOSED:
            raise StoreUnavailableError(
                code="store_closed",
                message="The counter store has been closed",
            )

    async def _reconnect(self, cause: BaseException, generation: int) -> None:
        """Re-establish the connection or fail terminally.

        Callers that observed the same outage (same generation) share one
        reconnect sequence: the first runs it while the rest wait on the lock
        and then see either a new generation or the terminal failure.
        """
        async with self._reconnect_lock:
            if generation != self._generation:
                return
            self._raise_if_unavailable()

            while True:
                self._retry_count += 1
                if self._retry_count > self._max_retries:
                    await self._fail(cause)

                self._set_state(ConnectionState.RETRYING, cause)
                logger.info(
                    "store.reconnecting",
                    extra={
                        "store_url": self.url,
                        "attempt": self._retry_count,
                        "max_retries": self._max_retries,
                        "delay_s": self._retry_delay_seconds,
                    },
                )
                await self._sleep(self._retry_delay_seconds)
                try:
                    await self._client.ping()
                except (RedisError, *TRANSPORT_ERRORS) as exc:
                    cause = exc
                    continue

                self._retry_count = 0
                self._generation += 1
                self._set_state(ConnectionState.CONNECTED)
                return

    async def _fail(self, cause: BaseException) -> None:
        logger.error(
            "store.retries_exhausted",
            extra={"store_url": self.url, "max_retries": self._max_retries},
        )
        self._terminal_error = StoreConnectionFailedError(
            code="store_connection_failed",
            message=(
                f"Could not connect to the counter store after {self._max_retries} retries"
            ),
            details={"store_state": ConnectionState.FAILED.value},
        )
        await self._disconnect()
        self._set_state(ConnectionState.FAILED, cause)
        raise self._terminal_error from cause

    async def _disconnect(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except (RedisError, *TRANSPORT_ERRORS) as exc:
            logger.debug("store.disconnect_error", extra={"error_msg": str(exc)})
