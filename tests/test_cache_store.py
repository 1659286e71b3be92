from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, time
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import make_stub
from fedjoin.cache.store import MemoryCacheStore, RedisCacheStore, SingleFlight, create_cache_store
from fedjoin.core.config import Settings
from fedjoin.core.errors import CacheStoreError
from fedjoin.queries.models import ExecutionContext, ResultSet


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_memory_store_expires_entries_after_their_ttl() -> None:
    clock = FakeClock()
    store = MemoryCacheStore(max_size=10, timer=clock)

    await store.set("short", ResultSet([{"id": 1}]), ttl=5)
    await store.set("long", ResultSet([{"id": 2}]), ttl=60)

    clock.now += 10
    assert await store.get("short") is None
    assert (await store.get("long")).bindings == [{"id": 2}]
    assert len(store) == 1


@pytest.mark.asyncio
async def test_memory_store_is_bounded() -> None:
    store = MemoryCacheStore(max_size=2)
    for i in range(5):
        await store.set(f"k{i}", ResultSet([{"id": i}]), ttl=60)

    assert len(store) == 2


@pytest.mark.asyncio
async def test_memory_store_returns_isolated_copies() -> None:
    store = MemoryCacheStore()
    original = ResultSet([{"id": 1}])
    await store.set("k", original, ttl=60)

    original.bindings.append({"id": 2})
    first = await store.get("k")
    first.bindings[0]["id"] = 99

    assert (await store.get("k")).bindings == [{"id": 1}]


@pytest.mark.asyncio
async def test_memory_store_invalidate_clear_and_stats() -> None:
    store = MemoryCacheStore()
    await store.set("a", ResultSet([{"id": 1}]), ttl=60)
    await store.set("b", ResultSet([{"id": 2}]), ttl=60)
    await store.set("zero", ResultSet([{"id": 3}]), ttl=0)

    await store.invalidate("a")
    await store.invalidate("missing")
    assert await store.get("a") is None
    assert await store.get("zero") is None
    assert await store.get("b") is not None

    stats = store.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2

    await store.clear()
    assert len(store) == 0


@pytest.mark.asyncio
async def test_redis_store_round_trips_json_with_expiry() -> None:
    client = MagicMock()
    client.set = AsyncMock()
    store = RedisCacheStore(client, prefix="t:")

    await store.set("k", ResultSet([{"id": 1}], query_activated=True), ttl=30.7)

    name, payload = client.set.await_args.args
    assert name == "t:k"
    assert client.set.await_args.kwargs == {"ex": 30}

    client.get = AsyncMock(return_value=payload)
    assert (await store.get("k")).bindings == [{"id": 1}]
    client.get.assert_awaited_once_with("t:k")


@pytest.mark.asyncio
async def test_redis_store_wraps_redis_failures() -> None:
    client = MagicMock()
    client.get = AsyncMock(side_effect=RedisConnectionError("down"))
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    store = RedisCacheStore(client)

    with pytest.raises(CacheStoreError):
        await store.get("k")
    with pytest.raises(CacheStoreError):
        await store.set("k", ResultSet(), ttl=10)


@pytest.mark.asyncio
async def test_redis_store_rejects_corrupt_entries() -> None:
    client = MagicMock()
    client.get = AsyncMock(return_value="{not json")
    store = RedisCacheStore(client)

    with pytest.raises(CacheStoreError):
        await store.get("k")


@pytest.mark.asyncio
async def test_unavailable_cache_degrades_to_backend_execution(context) -> None:
    client = MagicMock()
    client.get = AsyncMock(side_effect=RedisConnectionError("down"))
    client.set = AsyncMock(side_effect=RedisConnectionError("down"))
    query = make_stub(cache=RedisCacheStore(client), rows=[{"id": 7}])

    result = await query.fetch_results(context, False, "id")

    assert result.bindings == [{"id": 7}]
    assert len(query.executed) == 1


@pytest.mark.asyncio
async def test_single_flight_collapses_concurrent_calls() -> None:
    flight = SingleFlight()
    calls = 0
    release = asyncio.Event()

    async def work() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "done"

    waiters = [asyncio.ensure_future(flight.do("k", work)) for _ in range(5)]
    await asyncio.sleep(0)
    assert len(flight) == 1
    release.set()

    assert await asyncio.gather(*waiters) == ["done"] * 5
    assert calls == 1
    assert len(flight) == 0


@pytest.mark.asyncio
async def test_concurrent_cold_fetches_hit_backend_once_with_single_flight(cache, context) -> None:
    gate = asyncio.Event()
    query = make_stub(cache=cache, rows=[{"id": 1}], gate=gate, single_flight=True)

    waiters = [asyncio.ensure_future(query.fetch_results(context, False, "id")) for _ in range(4)]
    await asyncio.sleep(0.01)
    gate.set()
    results = await asyncio.gather(*waiters)

    assert len(query.executed) == 1
    assert all(r.bindings == [{"id": 1}] for r in results)


@pytest.mark.asyncio
async def test_cancelled_caller_still_populates_cache(cache, context) -> None:
    gate = asyncio.Event()
    query = make_stub(cache=cache, rows=[{"id": 1}], gate=gate)

    caller = asyncio.ensure_future(query.fetch_results(context, False, "id"))
    await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    gate.set()
    for _ in range(10):
        await asyncio.sleep(0)
        if len(cache):
            break

    assert len(cache) == 1
    again = await query.fetch_results(context, False, "id")
    assert again.bindings == [{"id": 1}]
    assert len(query.executed) == 1


def test_create_cache_store_selects_backend() -> None:
    assert isinstance(create_cache_store(Settings(cache_backend="memory")), MemoryCacheStore)
    store = create_cache_store(Settings(cache_backend="redis", redis_url="redis://localhost:6379/3"))
    assert isinstance(store, RedisCacheStore)


def test_result_set_payload_is_json_serializable() -> None:
    payload = ResultSet([{"id": 1, "name": "x"}]).to_dict()
    assert json.loads(json.dumps(payload)) == {"bindings": [{"id": 1, "name": "x"}], "query_activated": True}


def test_execution_context_is_immutable() -> None:
    context = ExecutionContext(username="fred", variables={"a": 1})
    extended = context.with_variables(b=2)
    assert dict(context.variables) == {"a": 1}
    assert dict(extended.variables) == {"a": 1, "b": 2}


class DictRedis:
    """Minimal in-memory stand-in for the redis.asyncio client."""

    def __init__(self) -> None:
        self.data = {}

    async def get(self, name):
        return self.data.get(name)

    async def set(self, name, value, ex=None):
        self.data[name] = value


@pytest.mark.asyncio
async def test_redis_store_preserves_sql_value_types() -> None:
    row = {
        "price": Decimal("1.50"),
        "on": date(2024, 1, 2),
        "at": datetime(2024, 1, 2, 3, 4, 5),
        "opens": time(9, 30),
        "ref": UUID("12345678-1234-5678-1234-567812345678"),
        "name": "acme",
        "nested": {"a": [1, 2]},
    }
    store = RedisCacheStore(DictRedis())

    await store.set("k", ResultSet([row]), ttl=60)
    cached = await store.get("k")

    assert cached.bindings == [row]
    assert type(cached.bindings[0]["at"]) is datetime
    assert type(cached.bindings[0]["on"]) is date


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["[1, 2]", '"text"', '{"bindings": 5}', '{"__fedjoin_type__": "blob", "value": "x"}'])
async def test_redis_store_treats_malformed_entries_as_corrupt(raw) -> None:
    client = DictRedis()
    client.data["fedjoin:query:k"] = raw
    store = RedisCacheStore(client)

    with pytest.raises(CacheStoreError):
        await store.get("k")


@pytest.mark.asyncio
async def test_non_object_cache_entry_degrades_to_backend_execution(context) -> None:
    client = DictRedis()
    store = RedisCacheStore(client)
    query = make_stub(cache=store, rows=[{"id": 7}])
    key = query.generate_cache_key(query.connection_identity, query.spec.result_query, False, "id", "fred")
    client.data[f"fedjoin:query:{key}"] = "[1, 2]"

    result = await query.fetch_results(context, False, "id")

    assert result.bindings == [{"id": 7}]
    assert len(query.executed) == 1
