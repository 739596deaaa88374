"""Unit tests for LimiterGate admission decisions."""

import asyncio
from types import SimpleNamespace

import pytest

from ratewall.adapters.store.base import AbstractCounterStore, ConnectionState
from ratewall.adapters.store.in_memory import InMemoryCounterStore
from ratewall.adapters.store.redis_store import RedisCounterStore
from ratewall.core.errors import (
    BadRequestAppError,
    RequestTimeoutAppError,
    StoreConnectionFailedError,
    StoreUnavailableError,
)
from ratewall.schemas.context import InvocationContext
from ratewall.services.limiter_gate import (
    LimiterGate,
    RateLimiterConfig,
    RequestIdentity,
    build_window_key,
    extract_identity,
    rate_limited,
)


class UnreachableStore(AbstractCounterStore):
    """Store whose every operation fails, as when Redis is down."""

    def __init__(self, error: StoreUnavailableError | None = None) -> None:
        super().__init__()
        self.error = error or StoreUnavailableError(code="store_command_failed", message="down")
        self.calls = 0

    async def connect(self) -> None:
        self._set_state(ConnectionState.FAILED, self.error)

    async def get(self, key: str) -> int | None:
        self.calls += 1
        raise self.error

    async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
        self.calls += 1
        raise self.error

    async def aclose(self) -> None:
        self._set_state(ConnectionState.CLOSED)


class RecordingStore(InMemoryCounterStore):
    """In-memory store that records the keys each operation touched."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.get_keys: list[str] = []
        self.incr_calls: list[tuple[str, int]] = []

    async def get(self, key: str) -> int | None:
        self.get_keys.append(key)
        return await super().get(key)

    async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
        self.incr_calls.append((key, ttl_seconds))
        return await super().incr_and_expire(key, ttl_seconds)


class TestWindowKey:
    def test_same_identity_same_minute_gives_same_key(self) -> None:
        identity = RequestIdentity("10.0.0.1", "get_user")

        assert build_window_key(identity, 1_700_000_000.0) == build_window_key(identity, 1_700_000_039.9)

    def test_next_minute_gives_different_key(self) -> None:
        identity = RequestIdentity("10.0.0.1", "get_user")

        assert build_window_key(identity, 1_700_000_039.9) != build_window_key(identity, 1_700_000_040.0)

    def test_scope_and_ip_are_part_of_key(self) -> None:
        now = 1_700_000_000.0
        keys = {
            build_window_key(RequestIdentity("10.0.0.1", "a"), now),
            build_window_key(RequestIdentity("10.0.0.1", "b"), now),
            build_window_key(RequestIdentity("10.0.0.2", "a"), now),
        }

        assert len(keys) == 3

    def test_key_layout(self) -> None:
        key = build_window_key(RequestIdentity("10.0.0.1", "get_user"), 120.5, prefix="rl")

        assert key == "rl:10.0.0.1:get_user:2"

    def test_empty_prefix_is_omitted(self) -> None:
        key = build_window_key(RequestIdentity("10.0.0.1", "get_user"), 120.5, prefix="")

        assert key == "10.0.0.1:get_user:2"

    def test_ipv6_addresses_keep_keys_distinct(self) -> None:
        now = 1_700_000_000.0

        key = build_window_key(RequestIdentity("2001:db8::1", "get_user"), now)

        assert key == "ratelimit:2001:db8::1:get_user:28333333"

    def test_colliding_ip_and_scope_split_cannot_be_built(self) -> None:
        now = 1_700_000_000.0
        assert build_window_key(RequestIdentity("a:b", "c"), now) == "ratelimit:a:b:c:28333333"

        with pytest.raises(ValueError):
            build_window_key(RequestIdentity("a", "b:c"), now)

    @pytest.mark.parametrize("scope", ["b:c", ":", ""])
    def test_scope_with_separator_is_rejected(self, scope) -> None:
        with pytest.raises(ValueError):
            build_window_key(RequestIdentity("a", scope), 1_700_000_000.0)


class TestExtractIdentity:
    def test_accepts_model(self, context: InvocationContext) -> None:
        assert extract_identity(context, "h") == RequestIdentity("203.0.113.7", "h")

    def test_accepts_gateway_mapping(self) -> None:
        raw = {"isGnzContext": True, "requestContext": {"http": {"sourceIp": "198.51.100.1"}}}

        assert extract_identity(raw, "h").source_ip == "198.51.100.1"

    def test_accepts_host_object_with_attributes(self) -> None:
        host_context = SimpleNamespace(
            isGnzContext=True,
            requestContext=SimpleNamespace(http=SimpleNamespace(sourceIp="198.51.100.9")),
        )

        assert extract_identity(host_context, "h") == RequestIdentity("198.51.100.9", "h")

    @pytest.mark.parametrize(
        "host_context",
        [
            SimpleNamespace(requestContext=SimpleNamespace(http=SimpleNamespace(sourceIp="198.51.100.9"))),
            SimpleNamespace(
                isGnzContext=False,
                requestContext=SimpleNamespace(http=SimpleNamespace(sourceIp="198.51.100.9")),
            ),
            SimpleNamespace(isGnzContext=True, requestContext=SimpleNamespace(http=None)),
        ],
    )
    def test_rejects_host_object_without_identity(self, host_context) -> None:
        with pytest.raises(BadRequestAppError):
            extract_identity(host_context, "h")

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "203.0.113.7",
            {},
            {"requestContext": {"http": {"sourceIp": "198.51.100.1"}}},
            {"isGnzContext": False, "requestContext": {"http": {"sourceIp": "198.51.100.1"}}},
            {"isGnzContext": True, "requestContext": {}},
            {"isGnzContext": True, "requestContext": {"http": {"sourceIp": ""}}},
        ],
    )
    def test_rejects_unrecognized_context(self, raw) -> None:
        with pytest.raises(BadRequestAppError) as exc_info:
            extract_identity(raw, "h")

        assert exc_info.value.code == "invalid_invocation_context"


class TestRateLimiterConfig:
    def test_defaults(self) -> None:
        cfg = RateLimiterConfig()

        assert cfg.limit == 50
        assert cfg.window_seconds == 59
        assert cfg.store_address == "redis://localhost:6379"

    def test_non_positive_limit_rejected(self) -> None:
        with pytest.raises(ValueError):
            RateLimiterConfig(limit=0)

    def test_invalid_window_accepted_at_construction(self) -> None:
        assert RateLimiterConfig(window_seconds=0).window_seconds == 0


class TestFromConfig:
    def test_memory_address_builds_in_memory_store(self) -> None:
        gate = LimiterGate.from_config(RateLimiterConfig(store_address="memory://", limit=3))

        assert isinstance(gate.store, InMemoryCounterStore)
        assert gate.config.limit == 3

    def test_redis_address_reaches_the_store(self) -> None:
        gate = LimiterGate.from_config(RateLimiterConfig(store_address="redis://:secret@cache.internal:6379/2"))

        assert isinstance(gate.store, RedisCounterStore)
        assert gate.store.url == "redis://:***@cache.internal:6379/2"

    @pytest.mark.asyncio
    async def test_unusable_address_gives_failed_store_and_fails_open(self, context) -> None:
        gate = LimiterGate.from_config(RateLimiterConfig(store_address="ftp://not-a-store", limit=1))
        await gate.store.connect()

        results = [await gate.admit(context, "h") for _ in range(3)]

        assert gate.store.state is ConnectionState.FAILED
        assert all(r.degraded for r in results)


class TestAdmit:
    @pytest.mark.asyncio
    async def test_admits_up_to_limit_then_rejects(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=3), clock=clock)

        results = [await gate.admit(context, "h") for _ in range(3)]
        assert [r.count for r in results] == [1, 2, 3]
        assert results[-1].remaining == 0

        with pytest.raises(RequestTimeoutAppError) as exc_info:
            await gate.admit(context, "h")

        error = exc_info.value
        assert error.code == "rate_limit_exceeded"
        assert error.details["limit"] == 3
        # clock sits 20s into its minute
        assert error.details["retry_after"] == 40

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_counted(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)
        result = await gate.admit(context, "h")

        for _ in range(3):
            with pytest.raises(RequestTimeoutAppError):
                await gate.admit(context, "h")

        assert await store.get(result.key) == 1

    @pytest.mark.asyncio
    async def test_new_minute_resets_budget(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)
        await gate.admit(context, "h")
        with pytest.raises(RequestTimeoutAppError):
            await gate.admit(context, "h")

        clock.advance(40)

        assert (await gate.admit(context, "h")).count == 1

    @pytest.mark.asyncio
    async def test_burst_across_boundary_admits_twice_the_limit(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=2), clock=clock)
        clock.advance(39)  # one second before the boundary

        admitted = 0
        for _ in range(2):
            await gate.admit(context, "h")
            admitted += 1
        clock.advance(1)
        for _ in range(2):
            await gate.admit(context, "h")
            admitted += 1

        assert admitted == 4

    @pytest.mark.asyncio
    async def test_scopes_are_counted_independently(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)

        first = await gate.admit(context, "list_items")
        second = await gate.admit(context, "create_item")

        assert first.key != second.key
        assert await store.get(first.key) == 1
        assert await store.get(second.key) == 1

    @pytest.mark.asyncio
    async def test_ips_are_counted_independently(self, store, clock) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)

        await gate.admit(InvocationContext.for_source_ip("10.0.0.1"), "h")
        await gate.admit(InvocationContext.for_source_ip("10.0.0.2"), "h")

    @pytest.mark.parametrize("window_seconds", [0, -5])
    @pytest.mark.asyncio
    async def test_invalid_window_rejects_without_touching_store(self, clock, context, window_seconds) -> None:
        store = RecordingStore(clock=clock)
        gate = LimiterGate(store, RateLimiterConfig(window_seconds=window_seconds), clock=clock)

        for _ in range(3):
            with pytest.raises(BadRequestAppError) as exc_info:
                await gate.admit(context, "h")
            assert exc_info.value.code == "invalid_window"

        assert store.get_keys == []
        assert store.incr_calls == []

    @pytest.mark.asyncio
    async def test_scope_with_separator_rejects_without_touching_store(self, clock, context) -> None:
        store = RecordingStore(clock=clock)
        gate = LimiterGate(store, clock=clock)

        with pytest.raises(BadRequestAppError) as exc_info:
            await gate.admit(context, "b:c")

        assert exc_info.value.code == "invalid_scope"
        assert store.get_keys == []

    @pytest.mark.asyncio
    async def test_ipv6_callers_are_counted_independently(self, store, clock) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)

        first = await gate.admit(InvocationContext.for_source_ip("2001:db8::1"), "h")
        second = await gate.admit(InvocationContext.for_source_ip("2001:db8::2"), "h")

        assert first.key != second.key
        with pytest.raises(RequestTimeoutAppError):
            await gate.admit(InvocationContext.for_source_ip("2001:db8::1"), "h")

    @pytest.mark.asyncio
    async def test_missing_identity_rejects_without_touching_store(self, clock) -> None:
        store = RecordingStore(clock=clock)
        gate = LimiterGate(store, clock=clock)

        with pytest.raises(BadRequestAppError):
            await gate.admit({"requestContext": {}}, "h")

        assert store.get_keys == []

    @pytest.mark.asyncio
    async def test_increment_uses_window_seconds_as_ttl(self, clock, context) -> None:
        store = RecordingStore(clock=clock)
        gate = LimiterGate(store, RateLimiterConfig(window_seconds=30), clock=clock)

        await gate.admit(context, "h")

        assert store.incr_calls[0][1] == 30

    @pytest.mark.asyncio
    async def test_key_is_computed_once_per_request(self, clock, context) -> None:
        class BoundaryCrossingStore(RecordingStore):
            async def get(self, key: str) -> int | None:
                value = await super().get(key)
                clock.advance(60)  # the minute ticks over between GET and INCR
                return value

        store = BoundaryCrossingStore(clock=clock)
        gate = LimiterGate(store, clock=clock)

        await gate.admit(context, "h")

        assert [key for key, _ in store.incr_calls] == store.get_keys

    @pytest.mark.asyncio
    async def test_unreachable_store_fails_open(self, context) -> None:
        store = UnreachableStore()
        gate = LimiterGate(store, RateLimiterConfig(limit=1))

        results = [await gate.admit(context, "h") for _ in range(5)]

        assert all(r.allowed and r.degraded for r in results)
        assert all(r.count is None for r in results)

    @pytest.mark.asyncio
    async def test_failed_connection_fails_open(self, context) -> None:
        store = UnreachableStore(
            StoreConnectionFailedError(code="store_connection_failed", message="gave up")
        )
        await store.connect()
        gate = LimiterGate(store)

        result = await gate.admit(context, "h")

        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_store_failure_on_increment_fails_open(self, store, clock, context) -> None:
        class IncrementFails(InMemoryCounterStore):
            async def incr_and_expire(self, key: str, ttl_seconds: int) -> int:
                raise StoreUnavailableError(code="store_command_failed", message="EXEC aborted")

        gate = LimiterGate(IncrementFails(clock=clock), clock=clock)

        assert (await gate.admit(context, "h")).degraded is True

    @pytest.mark.asyncio
    async def test_concurrent_admissions_count_exactly(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1000), clock=clock)

        results = await asyncio.gather(*(gate.admit(context, "h") for _ in range(100)))

        assert await store.get(results[0].key) == 100
        assert sorted(r.count for r in results) == list(range(1, 101))


class TestWrap:
    @pytest.mark.asyncio
    async def test_returns_handler_result_unchanged(self, store, clock, context) -> None:
        gate = LimiterGate(store, clock=clock)
        sentinel = object()

        async def get_user(ctx, user_id, *, verbose=False):
            return sentinel, user_id, verbose

        wrapped = gate.wrap(get_user)

        assert await wrapped(context, 7, verbose=True) == (sentinel, 7, True)
        assert wrapped.__name__ == "get_user"

    @pytest.mark.asyncio
    async def test_sync_handlers_are_supported(self, store, clock, context) -> None:
        gate = LimiterGate(store, clock=clock)

        wrapped = gate.wrap(lambda ctx: "pong", scope="ping")

        assert await wrapped(context) == "pong"

    @pytest.mark.asyncio
    async def test_handler_exception_propagates(self, store, clock, context) -> None:
        gate = LimiterGate(store, clock=clock)

        @rate_limited(gate)
        async def explode(ctx):
            raise KeyError("boom")

        with pytest.raises(KeyError):
            await explode(context)

    @pytest.mark.asyncio
    async def test_handler_not_invoked_when_rejected(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)
        calls = []

        @rate_limited(gate)
        async def handler(ctx):
            calls.append(ctx)

        await handler(context)
        with pytest.raises(RequestTimeoutAppError):
            await handler(context)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_scope_defaults_to_handler_name(self, clock, context) -> None:
        store = RecordingStore(clock=clock)
        gate = LimiterGate(store, clock=clock)

        async def list_orders(ctx):
            return []

        await gate.wrap(list_orders)(context)

        assert ":list_orders:" in store.get_keys[0]

    def test_scope_with_separator_is_rejected_at_wrap_time(self, store) -> None:
        gate = LimiterGate(store)

        with pytest.raises(ValueError):
            gate.wrap(lambda ctx: None, scope="users:read")

    @pytest.mark.asyncio
    async def test_missing_context_argument_is_bad_request(self, store, clock) -> None:
        gate = LimiterGate(store, clock=clock)
        wrapped = gate.wrap(lambda: None, scope="noop")

        with pytest.raises(BadRequestAppError):
            await wrapped()

    @pytest.mark.asyncio
    async def test_methods_use_context_position(self, store, clock, context) -> None:
        gate = LimiterGate(store, RateLimiterConfig(limit=1), clock=clock)

        class UserService:
            @rate_limited(gate, context_position=1)
            async def get_user(self, ctx, user_id):
                return user_id

        service = UserService()

        assert await service.get_user(context, 3) == 3
        with pytest.raises(RequestTimeoutAppError):
            await service.get_user(context, 3)

    @pytest.mark.asyncio
    async def test_unreachable_store_still_runs_handler(self, context) -> None:
        gate = LimiterGate(UnreachableStore())

        @rate_limited(gate)
        async def handler(ctx):
            return "served"

        assert [await handler(context) for _ in range(3)] == ["served"] * 3
