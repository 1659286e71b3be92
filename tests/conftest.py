from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from fedjoin.cache.store import MemoryCacheStore
from fedjoin.core.errors import ExecutionError
from fedjoin.queries.base import BaseQuery
from fedjoin.queries.models import DataSourceConfig, ExecutionContext, QuerySpec
from fedjoin.queries.parameters import SqlParameterPopulator

Rows = Union[List[Dict[str, Any]], Dict[str, Any]]


class StubQuery(BaseQuery):
    """In-process executor returning canned rows and recording every call."""

    def __init__(
        self,
        spec: QuerySpec,
        cache=None,
        rows: Union[Rows, Callable[[str], Rows], None] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        init_error: Optional[Exception] = None,
        **kwargs: Any,
    ):
        super().__init__(spec, cache, **kwargs)
        self.rows = rows if rows is not None else []
        self.error = error
        self.gate = gate
        self.init_error = init_error
        self.executed: List[str] = []
        self.init_calls = 0

    @property
    def connection_identity(self) -> str:
        return f"stub://{self.datasource_id}"

    async def _init(self) -> None:
        self.init_calls += 1
        if self.init_error is not None:
            raise self.init_error

    async def execute_raw(self, query: str) -> Dict[str, Any]:
        self.executed.append(query)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        rows = self.rows(query) if callable(self.rows) else self.rows
        return {"result": rows}


def make_datasource(datasource_id: str = "ds", cache_enabled: bool = True, **params: Any) -> DataSourceConfig:
    params.setdefault("cache_enabled", cache_enabled)
    return DataSourceConfig(
        datasource_id=datasource_id,
        datasource_type="stub",
        params=params,
        populator=SqlParameterPopulator(),
    )


def make_stub(
    result_query: str = "select id from t",
    datasource_id: str = "ds",
    cache=None,
    activation_query: str = "",
    cache_enabled: bool = True,
    **kwargs: Any,
) -> StubQuery:
    spec = QuerySpec(
        result_query=result_query,
        activation_query=activation_query,
        datasource=make_datasource(datasource_id, cache_enabled=cache_enabled),
        query_id=datasource_id,
    )
    kwargs.setdefault("single_flight", False)
    return StubQuery(spec, cache, **kwargs)


def failing_stub(datasource_id: str, **kwargs: Any) -> StubQuery:
    return make_stub(
        datasource_id=datasource_id,
        error=ExecutionError(datasource_id, "boom"),
        **kwargs,
    )


@pytest.fixture
def cache() -> MemoryCacheStore:
    return MemoryCacheStore(max_size=100)


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext(username="fred")
