from fedjoin.cache.store import (
    CacheStore,
    MemoryCacheStore,
    RedisCacheStore,
    SingleFlight,
    create_cache_store,
)

__all__ = [
    "CacheStore",
    "MemoryCacheStore",
    "RedisCacheStore",
    "SingleFlight",
    "create_cache_store",
]
