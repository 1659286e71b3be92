"""
Data model shared by query executors, the cache and the join planner.
"""

import copy
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from fedjoin.queries.parameters import ParameterPopulator, SqlParameterPopulator


@dataclass(frozen=True)
class DataSourceConfig:
    """
    Connection parameters of one backend plus the capability used to
    populate query templates for it.

    Owned by the catalog; executors only read it.
    """
    datasource_id: str
    datasource_type: str
    params: Mapping[str, Any] = field(default_factory=dict)
    populator: ParameterPopulator = field(default_factory=SqlParameterPopulator)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def cache_enabled(self) -> bool:
        """Whether results of queries against this datasource are cached."""
        return bool(self.params.get("cache_enabled", False))

    def get(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)


@dataclass(frozen=True)
class QuerySpec:
    """Declarative description of a query against one backend."""
    result_query: str
    datasource: DataSourceConfig
    activation_query: str = ""
    query_id: Optional[str] = None

    @property
    def label(self) -> str:
        return self.query_id or self.datasource.datasource_id


@dataclass(frozen=True)
class ExecutionContext:
    """Per-request data: caller identity, user variables and the force flag."""
    username: Optional[str] = None
    variables: Mapping[str, Any] = field(default_factory=dict)
    force_refresh: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    def with_variables(self, **variables: Any) -> "ExecutionContext":
        """Return a copy of this context with extra variables bound."""
        merged = dict(self.variables)
        merged.update(variables)
        return replace(self, variables=merged)


@dataclass
class ResultSet:
    """
    Normalized result of one query: an ordered list of bindings, each a
    mapping from column name to value.

    ``query_activated`` is False when the activation query gated the
    query out, which is different from a query that ran and matched nothing.
    """
    bindings: List[Dict[str, Any]] = field(default_factory=list)
    query_activated: bool = True

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> "ResultSet":
        """
        Normalize a raw backend response of the form ``{"result": rows}``.

        ``rows`` may be a list of mappings or a single mapping. An empty
        mapping or an empty list yields no bindings.
        """
        rows = (raw or {}).get("result")
        if not rows:
            return cls(bindings=[])
        if isinstance(rows, Mapping):
            return cls(bindings=[dict(rows)])
        return cls(bindings=[dict(row) for row in rows])

    @classmethod
    def not_activated(cls) -> "ResultSet":
        return cls(bindings=[], query_activated=False)

    def column(self, name: str) -> List[Any]:
        """Values of one column, in row order, skipping rows without it."""
        return [row[name] for row in self.bindings if name in row]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "bindings": copy.deepcopy(self.bindings),
            "query_activated": self.query_activated,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResultSet":
        """Create from dictionary."""
        return cls(
            bindings=[dict(row) for row in data.get("bindings", [])],
            query_activated=data.get("query_activated", True),
        )

    def __len__(self) -> int:
        return len(self.bindings)

    @property
    def is_empty(self) -> bool:
        return not self.bindings
