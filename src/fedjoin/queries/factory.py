"""
Query executor factory.

Maps a datasource type tag to the executor class that serves it. The map
is resolved once when the catalog is loaded.
"""

from enum import Enum
from typing import Callable, Dict, List, Optional

from fedjoin.cache.store import CacheStore
from fedjoin.core.errors import ConfigurationError
from fedjoin.queries.base import BaseQuery
from fedjoin.queries.jdbc import JdbcQuery
from fedjoin.queries.models import QuerySpec
from fedjoin.queries.mysql import MysqlQuery
from fedjoin.queries.parameters import (
    JsonParameterPopulator,
    ParameterPopulator,
    SqlParameterPopulator,
)
from fedjoin.queries.search_engine import SearchEngineQuery


class DatasourceType(Enum):
    """Supported datasource types."""
    SEARCH = "search"
    JDBC = "jdbc"
    MYSQL = "mysql"


QueryConstructor = Callable[..., BaseQuery]


class QueryFactory:
    """Factory for creating query executor instances."""

    def __init__(self) -> None:
        self._constructors: Dict[str, QueryConstructor] = {
            DatasourceType.SEARCH.value: SearchEngineQuery,
            DatasourceType.JDBC.value: JdbcQuery,
            DatasourceType.MYSQL.value: MysqlQuery,
        }
        self._populators: Dict[str, Callable[[], ParameterPopulator]] = {
            DatasourceType.SEARCH.value: JsonParameterPopulator,
            DatasourceType.JDBC.value: SqlParameterPopulator,
            DatasourceType.MYSQL.value: lambda: SqlParameterPopulator(escape_backslash=True),
        }

    def register(
        self,
        datasource_type: str,
        constructor: QueryConstructor,
        populator: Optional[Callable[[], ParameterPopulator]] = None,
    ) -> None:
        """
        Register an executor for a new datasource type.

        Args:
            datasource_type: Type tag used in the catalog
            constructor: Callable taking (spec, cache, **options)
            populator: Factory for the parameter populator of the type
        """
        self._constructors[datasource_type] = constructor
        self._populators[datasource_type] = populator or SqlParameterPopulator

    def populator_for(self, datasource_type: str) -> ParameterPopulator:
        if datasource_type not in self._populators:
            raise ConfigurationError(f"Unsupported datasource type '{datasource_type}'")
        return self._populators[datasource_type]()

    def create_query(
        self,
        spec: QuerySpec,
        cache: Optional[CacheStore] = None,
        **options,
    ) -> BaseQuery:
        """
        Create an executor for a query spec.

        Args:
            spec: Query to execute
            cache: Shared result cache
            options: Extra executor options (cache_ttl, single_flight)

        Returns:
            Executor instance

        Raises:
            ConfigurationError: if the datasource type is not supported
        """
        constructor = self._constructors.get(spec.datasource.datasource_type)
        if constructor is None:
            raise ConfigurationError(
                f"Unsupported datasource type '{spec.datasource.datasource_type}'"
            )
        return constructor(spec, cache, **options)

    def get_supported_types(self) -> List[str]:
        """Get list of supported datasource types."""
        return sorted(self._constructors)


query_factory = QueryFactory()
