"""Counter store adapters.

The limiter gate only needs GET and an atomic INCR+EXPIRE. Redis provides
both across instances; the in-memory store provides them within a process.
"""

from ratewall.adapters.store.base import AbstractCounterStore, ConnectionState
from ratewall.adapters.store.factory import create_counter_store
from ratewall.adapters.store.in_memory import InMemoryCounterStore
from ratewall.adapters.store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "ConnectionState",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
