"""
Search request transformation.

A search body may embed join directives anywhere a query clause is
allowed::

    {"join": {"relation": "companies-in-region", "field": "company_id"}}

Each directive is resolved through the planner and replaced by the filter
built by the injector.

Directives may also be given at the top level of the body, as one object
or a list. These are removed from the body and their filters are injected
into ``query.bool.filter``, replacing any earlier filter of the same name::

    {"query": {"match": {"title": "merger"}},
     "join": [{"relation": "companies-in-region", "field": "company_id"}]}

Bodies without directives come back unchanged.
"""

import json
from typing import Any, Dict, List, Mapping, Optional

from fedjoin.core.errors import JoinError
from fedjoin.core.logging import get_logger
from fedjoin.join.injector import FilterInjector
from fedjoin.join.planner import JoinPlanner, JoinRelation
from fedjoin.join.sort import normalize_sort
from fedjoin.queries.models import ExecutionContext

logger = get_logger(__name__)

DIRECTIVE = "join"


def _directive(clause: Any) -> Optional[Dict[str, Any]]:
    if isinstance(clause, dict) and len(clause) == 1 and DIRECTIVE in clause:
        spec = clause[DIRECTIVE]
        if isinstance(spec, dict) and "relation" in spec:
            return spec
    return None


def find_directives(node: Any) -> List[Dict[str, Any]]:
    """All join directives of a query tree, in document order."""
    spec = _directive(node)
    if spec is not None:
        return [spec]
    found: List[Dict[str, Any]] = []
    if isinstance(node, dict):
        for value in node.values():
            found.extend(find_directives(value))
    elif isinstance(node, list):
        for value in node:
            found.extend(find_directives(value))
    return found


def _top_level_directives(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    for item in items:
        if not isinstance(item, dict) or "relation" not in item:
            raise JoinError(str(item), "Malformed join directive")
    return items


def _filter_name(spec: Mapping[str, Any]) -> str:
    return spec.get("name") or f"join:{spec['relation']}"


class SearchRequestTransformer:
    """
    Resolves join directives of search bodies into injected filters.
    """

    def __init__(
        self,
        planner: JoinPlanner,
        relations: Mapping[str, JoinRelation],
        injector: Optional[FilterInjector] = None,
        field_types: Optional[Mapping[str, str]] = None,
        sort_defaults: Optional[Mapping[str, Any]] = None,
    ):
        self.planner = planner
        self.relations = relations
        self.injector = injector or FilterInjector()
        self.field_types = field_types
        self.sort_defaults = sort_defaults

    async def transform(self, body: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        """
        Rewrite one search body.

        Args:
            body: Search request body; not modified
            context: Caller identity, variables and force flag

        Returns:
            The rewritten body

        Raises:
            JoinError: if a directive names an unknown relation or a
                relation fails to resolve
        """
        query = body.get("query")
        directives = find_directives(query) if query is not None else []
        top_level = _top_level_directives(body.get(DIRECTIVE))

        relations: Dict[str, JoinRelation] = {}
        for spec in directives + top_level:
            relation_id = spec["relation"]
            if relation_id not in self.relations:
                raise JoinError(relation_id, "Unknown join relation")
            if "field" not in spec:
                raise JoinError(relation_id, "Join directive has no target field")
            relations[relation_id] = self.relations[relation_id]

        values = await self.planner.resolve_many(relations, context) if relations else {}
        if relations:
            logger.info(
                "Resolved join directives",
                relations=list(relations),
                sizes={rid: len(v) for rid, v in values.items()},
            )

        transformed = dict(body)
        transformed.pop(DIRECTIVE, None)
        if query is not None:
            transformed["query"] = self._replace(query, values)
        for spec in top_level:
            relation_id = spec["relation"]
            transformed = self.injector.inject(
                transformed, spec["field"], values[relation_id], _filter_name(spec)
            )
        if "sort" in transformed and self.field_types is not None:
            transformed["sort"] = normalize_sort(transformed["sort"], self.field_types, self.sort_defaults)
        return transformed

    def _replace(self, node: Any, values: Mapping[str, List[Any]]) -> Any:
        spec = _directive(node)
        if spec is not None:
            return self.injector.build_filter(spec["field"], values[spec["relation"]], _filter_name(spec))
        if isinstance(node, dict):
            return {key: self._replace(value, values) for key, value in node.items()}
        if isinstance(node, list):
            return [self._replace(value, values) for value in node]
        return node

    async def transform_msearch(self, payload: str, context: ExecutionContext) -> str:
        """
        Rewrite a newline delimited multi-search payload.

        Header lines pass through untouched; every body line is transformed.
        """
        lines = [line for line in payload.splitlines() if line.strip()]
        if len(lines) % 2:
            raise ValueError("Multi-search payload must hold header/body pairs")

        out = []
        for header, raw_body in zip(lines[0::2], lines[1::2]):
            body = await self.transform(json.loads(raw_body), context)
            out.append(header)
            out.append(json.dumps(body, separators=(",", ":")))
        return "\n".join(out) + "\n"
