"""
Query result caches.

Every query execution consults and updates a CacheStore keyed by the query
fingerprint. The in-memory store is the default; the Redis store lets
several processes share results.
"""

import asyncio
import json
import threading
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from datetime import time as time_of_day
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional, TypeVar
from uuid import UUID

from cachetools import TLRUCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

from fedjoin.core.config import Settings
from fedjoin.core.errors import CacheStoreError
from fedjoin.core.logging import get_logger
from fedjoin.queries.models import ResultSet

logger = get_logger(__name__)

T = TypeVar("T")


class CacheStore(ABC):
    """Key to ResultSet store with per-entry TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[ResultSet]:
        """Return the cached result or None on a miss."""

    @abstractmethod
    async def set(self, key: str, value: ResultSet, ttl: float) -> None:
        """Store a result for ``ttl`` seconds. Last write wins."""

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        """Drop one entry. Unknown keys are ignored."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry owned by this store."""

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.__class__.__name__}


class _Entry(NamedTuple):
    payload: Dict[str, Any]
    ttl: float


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class MemoryCacheStore(CacheStore):
    """
    Single-process store bounded by size and per-entry TTL.

    Entries are stored as plain dict snapshots so that callers mutating a
    returned ResultSet never alter the cached copy.
    """

    def __init__(self, max_size: int = 500, timer: Callable[[], float] = time.monotonic):
        self._cache: TLRUCache = TLRUCache(maxsize=max_size, ttu=_time_to_use, timer=timer)
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[ResultSet]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return ResultSet.from_dict(entry.payload)

    async def set(self, key: str, value: ResultSet, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._cache[key] = _Entry(value.to_dict(), float(ttl))

    async def invalidate(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "size": len(self),
            "max_size": self._cache.maxsize,
            "hits": self.hits,
            "misses": self.misses,
        }


_TYPE_TAG = "__fedjoin_type__"

_DECODERS: Dict[str, Callable[[str], Any]] = {
    "decimal": Decimal,
    "datetime": datetime.fromisoformat,
    "date": date.fromisoformat,
    "time": time_of_day.fromisoformat,
    "uuid": UUID,
}


def _encode_value(value: Any) -> Dict[str, str]:
    if isinstance(value, Decimal):
        return {_TYPE_TAG: "decimal", "value": str(value)}
    # datetime is a date subclass, check it first
    if isinstance(value, datetime):
        return {_TYPE_TAG: "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {_TYPE_TAG: "date", "value": value.isoformat()}
    if isinstance(value, time_of_day):
        return {_TYPE_TAG: "time", "value": value.isoformat()}
    if isinstance(value, UUID):
        return {_TYPE_TAG: "uuid", "value": str(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_value(obj: Dict[str, Any]) -> Any:
    tag = obj.get(_TYPE_TAG)
    if tag is None or len(obj) != 2:
        return obj
    decoder = _DECODERS.get(tag)
    if decoder is None:
        raise ValueError(f"Unknown value type '{tag}'")
    return decoder(obj["value"])


class RedisCacheStore(CacheStore):
    """
    Store shared between processes through Redis.

    Redis failures surface as CacheStoreError; query executors treat them
    as cache misses.
    """

    def __init__(self, client: Redis, prefix: str = "fedjoin:query:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "fedjoin:query:") -> "RedisCacheStore":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[ResultSet]:
        try:
            raw = await self.client.get(self._name(key))
        except RedisError as e:
            raise CacheStoreError(f"Redis get failed: {e}") from e
        if raw is None:
            return None
        try:
            data = json.loads(raw, object_hook=_decode_value)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return ResultSet.from_dict(data)
        except (TypeError, ValueError, InvalidOperation) as e:
            raise CacheStoreError(f"Corrupt cache entry for {key}: {e}") from e

    async def set(self, key: str, value: ResultSet, ttl: float) -> None:
        try:
            payload = json.dumps(value.to_dict(), default=_encode_value)
        except TypeError as e:
            raise CacheStoreError(f"Result for {key} is not cacheable: {e}") from e
        try:
            await self.client.set(self._name(key), payload, ex=max(1, int(ttl)))
        except RedisError as e:
            raise CacheStoreError(f"Redis set failed: {e}") from e

    async def invalidate(self, key: str) -> None:
        try:
            await self.client.delete(self._name(key))
        except RedisError as e:
            raise CacheStoreError(f"Redis delete failed: {e}") from e

    async def clear(self) -> None:
        try:
            async for name in self.client.scan_iter(match=f"{self.prefix}*"):
                await self.client.delete(name)
        except RedisError as e:
            raise CacheStoreError(f"Redis clear failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()

    def stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "prefix": self.prefix}


class SingleFlight:
    """
    Collapses concurrent calls for the same key into one execution.

    The shared task is shielded, so a cancelled waiter never cancels the
    work other waiters depend on.
    """

    def __init__(self) -> None:
        self._inflight: Dict[str, "asyncio.Future[Any]"] = {}

    async def do(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Future[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark the exception retrieved when every waiter went away
            task.exception()

    def __len__(self) -> int:
        return len(self._inflight)


def create_cache_store(config: Settings) -> CacheStore:
    """
    Build the cache store selected by configuration.

    Args:
        config: Application settings

    Returns:
        A memory or Redis backed CacheStore
    """
    if config.cache_backend == "redis":
        logger.info("Using Redis query cache", url=config.redis_url)
        return RedisCacheStore.from_url(config.redis_url, prefix=config.redis_key_prefix)
    logger.info("Using in-memory query cache", max_size=config.cache_max_size)
    return MemoryCacheStore(max_size=config.cache_max_size)
