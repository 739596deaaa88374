"""Counter store interfaces.

The limiter gate depends on this abstraction, not on Redis, so it can be
exercised against the in-memory store in tests and local development.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Callable

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    """Lifecycle of a store connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RETRYING = "retrying"
    FAILED = "failed"
    CLOSED = "closed"


StateListener = Callable[[ConnectionState, BaseException | None], None]


class AbstractCounterStore(ABC):
    """Interface for shared counter stores.

    Implementations raise StoreUnavailableError (or its terminal subclass
    StoreConnectionFailedError) for any failure to serve an operation.
    """

    def __init__(self) -> None:
        self._state = ConnectionState.CONNECTING
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def available(self) -> bool:
        """Whether operations may be attempted at all."""
        return self._state not in (ConnectionState.FAILED, ConnectionState.CLOSED)

    def add_listener(self, listener: StateListener) -> None:
        """Subscribe to state transitions.

        Listeners run synchronously on every transition. They are for
        visibility only; an exception raised by a listener is logged and
        does not affect the store.
        """
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState, error: BaseException | None = None) -> None:
        previous = self._state
        self._state = state
        log = logger.warning if state in (ConnectionState.RETRYING, ConnectionState.FAILED) else logger.info
        log(
            "store.state_changed",
            extra={
                "store": type(self).__name__,
                "previous_state": previous.value,
                "state": state.value,
                "error_type": type(error).__name__ if error else None,
                "error_msg": str(error) if error else None,
            },
        )
        for listener in list(self._listeners):
            try:
                listener(state, error)
            except Exception:
                logger.exception(
                    "store.listener_failed",
                    extra={"store": type(self).__name__, "state": state.value},
                )

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection. Never raises; failures are reflected in state."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> int | None:
        """Return the counter stored under key, or None when absent."""
        raise NotImplementedError

    @abstractmethod
    async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment key and (re)set its expiry.

        Both effects must be indivisible relative to concurrent increments
        of the same key.

        Returns:
            The counter value after the increment.
        """
        raise NotImplementedError

    @abstractmethod
    async def aclose(self) -> None:
        """Release the connection. The store is unusable afterwards."""
        raise NotImplementedError
