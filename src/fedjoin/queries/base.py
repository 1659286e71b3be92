"""
Base query executor shared by every backend.

A query executor runs one QuerySpec against one backend, consults the
result cache, and normalizes the backend response into a ResultSet.
Subclasses only provide the connection identity, the connection setup and
the raw execution.
"""

import asyncio
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from fedjoin.cache.store import CacheStore, SingleFlight
from fedjoin.core.config import settings
from fedjoin.core.errors import BackendConnectionError, BackendError, CacheStoreError, ExecutionError
from fedjoin.core.logging import get_logger
from fedjoin.queries.models import DataSourceConfig, ExecutionContext, QuerySpec, ResultSet

logger = get_logger(__name__)


class BaseQuery(ABC):
    """
    Abstract base class for all query executors.
    Defines the execution contract every backend implements.
    """

    def __init__(
        self,
        spec: QuerySpec,
        cache: Optional[CacheStore] = None,
        cache_ttl: Optional[float] = None,
        single_flight: Optional[bool] = None,
    ):
        """Initialize the executor with its query and cache handle."""
        self.spec = spec
        self.cache = cache
        self.cache_ttl = cache_ttl if cache_ttl is not None else settings.cache_ttl_seconds
        if single_flight is None:
            single_flight = settings.cache_single_flight
        self._single_flight: Optional[SingleFlight] = SingleFlight() if single_flight else None
        self.logger = get_logger(f"{__name__}.{self.__class__.__name__}")
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def datasource(self) -> DataSourceConfig:
        return self.spec.datasource

    @property
    def datasource_id(self) -> str:
        return self.spec.datasource.datasource_id

    @property
    @abstractmethod
    def connection_identity(self) -> str:
        """Identity of the connection target, part of every cache key."""

    @abstractmethod
    async def _init(self) -> None:
        """Open the backend connection. Called at most once until close()."""

    @abstractmethod
    async def execute_raw(self, query: str) -> Dict[str, Any]:
        """
        Execute a populated query against the backend.

        Args:
            query: Populated query text

        Returns:
            Raw response of the form ``{"result": rows}``

        Raises:
            ExecutionError: if the backend reports a failure
            BackendConnectionError: if the backend cannot be reached
        """

    async def initialize(self) -> None:
        """
        Establish the backend connection. Idempotent.

        Raises:
            BackendConnectionError: if the backend is unreachable
        """
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self._init()
            except BackendError:
                raise
            except Exception as e:
                self.logger.error("Backend initialization failed", datasource_id=self.datasource_id, error=str(e))
                raise BackendConnectionError(self.datasource_id, f"Unable to connect: {e}", cause=e) from e
            self._initialized = True

    async def close(self) -> None:
        """Release backend resources."""
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def generate_cache_key(
        self,
        connection_identity: str,
        result_query: str,
        force_refresh: bool,
        variable_binding: Optional[str],
        caller_identity: Optional[str],
    ) -> str:
        """
        Fingerprint one execution. Pure: no I/O.

        The components are JSON encoded as an ordered list before hashing so
        that no two different tuples can collide by concatenation.
        """
        payload = json.dumps(
            [connection_identity, result_query, force_refresh, variable_binding, caller_identity],
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    async def check_activation(self, context: ExecutionContext) -> bool:
        """
        Evaluate the activation query.

        An empty activation query always activates. Otherwise the query is
        active when the activation query returns at least one row.
        """
        activation = (self.spec.activation_query or "").strip()
        if not activation:
            return True
        populated = self.datasource.populator.populate_parameters(activation, context)
        await self.initialize()
        raw = await self._run(populated)
        return not ResultSet.from_raw(raw).is_empty

    async def fetch_results(
        self,
        context: ExecutionContext,
        force_refresh: bool = False,
        variable_binding: Optional[str] = None,
    ) -> ResultSet:
        """
        Execute the query, served from cache when possible.

        Args:
            context: Caller identity and template variables
            force_refresh: Bypass the cache and always hit the backend
            variable_binding: Name of the variable the result binds to

        Returns:
            Normalized ResultSet
        """
        if not await self.check_activation(context):
            self.logger.debug("Query not activated", query=self.spec.label)
            return ResultSet.not_activated()

        query = self.datasource.populator.populate_parameters(self.spec.result_query, context)
        cache_key = self.generate_cache_key(
            self.connection_identity,
            query,
            force_refresh,
            variable_binding,
            context.username,
        )

        use_cache = self.cache is not None and self.datasource.cache_enabled
        if use_cache and not force_refresh:
            cached = await self._cache_get(cache_key)
            if cached is not None:
                self.logger.debug("Cache hit", query=self.spec.label, datasource_id=self.datasource_id)
                return cached

        if self._single_flight is not None and not force_refresh:
            return await self._single_flight.do(
                cache_key, lambda: self._execute_and_store(query, cache_key, use_cache)
            )

        # The backend call and the cache write outlive a cancelled caller.
        task = asyncio.ensure_future(self._execute_and_store(query, cache_key, use_cache))
        task.add_done_callback(_retrieve_exception)
        return await asyncio.shield(task)

    async def _execute_and_store(self, query: str, cache_key: str, use_cache: bool) -> ResultSet:
        await self.initialize()
        raw = await self._run(query)
        result = ResultSet.from_raw(raw)
        if use_cache:
            await self._cache_set(cache_key, result)
        return result

    async def _run(self, query: str) -> Dict[str, Any]:
        try:
            return await self.execute_raw(query)
        except BackendError as e:
            self.logger.error(
                "Query execution failed",
                datasource_id=self.datasource_id,
                query=self.spec.label,
                error=str(e),
            )
            raise
        except Exception as e:
            self.logger.error(
                "Query execution failed",
                datasource_id=self.datasource_id,
                query=self.spec.label,
                error=str(e),
            )
            raise ExecutionError(self.datasource_id, str(e), cause=e) from e

    async def _cache_get(self, key: str) -> Optional[ResultSet]:
        try:
            return await self.cache.get(key)
        except CacheStoreError as e:
            self.logger.warning("Cache unavailable, treating as miss", datasource_id=self.datasource_id, error=str(e))
            return None

    async def _cache_set(self, key: str, result: ResultSet) -> None:
        try:
            await self.cache.set(key, result, self.cache_ttl)
        except CacheStoreError as e:
            self.logger.warning("Cache unavailable, result not stored", datasource_id=self.datasource_id, error=str(e))

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(datasource={self.datasource_id})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"datasource={self.datasource_id}, "
            f"query={self.spec.label!r}, "
            f"initialized={self._initialized}"
            f")"
        )


def _retrieve_exception(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()
