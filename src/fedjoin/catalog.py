"""
Relation catalog.

Loads datasources, queries and join relations from a JSON document and
owns the executors built from them for the lifetime of the process (or
until the catalog is reloaded).

Example document::

    {
      "datasources": {
        "crm": {"type": "mysql", "params": {"host": "db", "dbname": "crm", "cache_enabled": true}}
      },
      "queries": {
        "companies": {"datasource": "crm", "result_query": "SELECT id FROM company WHERE region = @region@"}
      },
      "relations": {
        "companies-in-region": {"mode": "sequence", "steps": [{"query": "companies", "column": "id"}]}
      },
      "field_types": {"title": "text", "title.keyword": "keyword", "published": "date"},
      "sort_defaults": {"missing": "_last"}
    }

``field_types`` and ``sort_defaults`` are optional; without ``field_types``
sort clauses pass through untouched.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from fedjoin.cache.store import CacheStore
from fedjoin.core.config import settings
from fedjoin.core.errors import ConfigurationError
from fedjoin.core.logging import get_logger
from fedjoin.join.planner import FailurePolicy, JoinRelation, JoinStep, ReductionMode, SetOperation
from fedjoin.queries.base import BaseQuery
from fedjoin.queries.factory import QueryFactory, query_factory
from fedjoin.queries.models import DataSourceConfig, QuerySpec

logger = get_logger(__name__)


class DatasourceEntry(BaseModel):
    type: str
    params: Dict[str, Any] = Field(default_factory=dict)


class QueryEntry(BaseModel):
    datasource: str
    result_query: str
    activation_query: str = ""


class StepEntry(BaseModel):
    query: str
    column: str
    variable: Optional[str] = None


class RelationEntry(BaseModel):
    steps: List[StepEntry]
    mode: ReductionMode = ReductionMode.SEQUENCE
    set_operation: SetOperation = SetOperation.UNION
    failure_policy: Optional[FailurePolicy] = None


class CatalogDocument(BaseModel):
    datasources: Dict[str, DatasourceEntry] = Field(default_factory=dict)
    queries: Dict[str, QueryEntry] = Field(default_factory=dict)
    relations: Dict[str, RelationEntry] = Field(default_factory=dict)
    # mapping type per field of the target index, enables sort normalization
    field_types: Optional[Dict[str, str]] = None
    sort_defaults: Dict[str, Any] = Field(default_factory=dict)


class RelationCatalog:
    """
    Holds the executors and relations built from one catalog document.
    """

    def __init__(
        self,
        datasources: Dict[str, DataSourceConfig],
        queries: Dict[str, BaseQuery],
        relations: Dict[str, JoinRelation],
        field_types: Optional[Dict[str, str]] = None,
        sort_defaults: Optional[Dict[str, Any]] = None,
    ):
        self.logger = get_logger(__name__)
        self.datasources = datasources
        self.queries = queries
        self.relations = relations
        self.field_types = field_types
        self.sort_defaults = sort_defaults or {}

    def get_relation(self, relation_id: str) -> Optional[JoinRelation]:
        return self.relations.get(relation_id)

    def list_relations(self) -> List[str]:
        return list(self.relations.keys())

    async def close(self) -> None:
        """Release every executor's backend resources."""
        for query_id, query in self.queries.items():
            try:
                await query.close()
            except Exception as e:
                self.logger.error("Error closing query", query=query_id, datasource_id=query.datasource_id, error=str(e))

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get statistics about the catalog.

        Returns:
            Counts plus per-query connection state
        """
        return {
            "datasources": len(self.datasources),
            "relations": len(self.relations),
            "queries": {
                query_id: {
                    "type": query.__class__.__name__,
                    "datasource_id": query.datasource_id,
                    "initialized": query.is_initialized,
                }
                for query_id, query in self.queries.items()
            },
        }


def _read_document(source: Union[str, Path, Mapping[str, Any]]) -> CatalogDocument:
    if isinstance(source, Mapping):
        data = source
    else:
        path = Path(source)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Unable to read catalog {path}: {e}") from e
    try:
        return CatalogDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid catalog: {e}") from e


def load_catalog(
    source: Union[str, Path, Mapping[str, Any]],
    cache: Optional[CacheStore] = None,
    factory: QueryFactory = query_factory,
    cache_ttl: Optional[float] = None,
    single_flight: Optional[bool] = None,
) -> RelationCatalog:
    """
    Build a catalog from a JSON file or an already parsed document.

    Args:
        source: Path to a JSON file, or the document itself
        cache: Cache store shared by every executor
        factory: Datasource type registry
        cache_ttl: TTL of cached results; defaults to settings
        single_flight: Collapse concurrent cold executions; defaults to settings

    Returns:
        The loaded catalog

    Raises:
        ConfigurationError: on unreadable or inconsistent documents
    """
    document = _read_document(source)

    datasources: Dict[str, DataSourceConfig] = {}
    for datasource_id, entry in document.datasources.items():
        datasources[datasource_id] = DataSourceConfig(
            datasource_id=datasource_id,
            datasource_type=entry.type,
            params=entry.params,
            populator=factory.populator_for(entry.type),
        )

    queries: Dict[str, BaseQuery] = {}
    for query_id, entry in document.queries.items():
        datasource = datasources.get(entry.datasource)
        if datasource is None:
            raise ConfigurationError(f"Query {query_id} references unknown datasource '{entry.datasource}'")
        spec = QuerySpec(
            result_query=entry.result_query,
            activation_query=entry.activation_query,
            datasource=datasource,
            query_id=query_id,
        )
        queries[query_id] = factory.create_query(
            spec, cache, cache_ttl=cache_ttl, single_flight=single_flight
        )

    relations: Dict[str, JoinRelation] = {}
    for relation_id, entry in document.relations.items():
        steps = []
        for step in entry.steps:
            query = queries.get(step.query)
            if query is None:
                raise ConfigurationError(f"Relation {relation_id} references unknown query '{step.query}'")
            steps.append(JoinStep(query=query, column=step.column, variable_name=step.variable))
        if not steps:
            raise ConfigurationError(f"Relation {relation_id} has no steps")
        relations[relation_id] = JoinRelation(
            relation_id=relation_id,
            steps=steps,
            mode=entry.mode,
            set_operation=entry.set_operation,
            failure_policy=entry.failure_policy or FailurePolicy(settings.join_failure_policy),
        )

    logger.info(
        "Loaded relation catalog",
        datasources=len(datasources),
        queries=len(queries),
        relations=len(relations),
    )
    return RelationCatalog(
        datasources,
        queries,
        relations,
        field_types=document.field_types,
        sort_defaults=document.sort_defaults,
    )
