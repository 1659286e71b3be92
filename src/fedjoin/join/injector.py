"""
Filter injection into search request bodies.

Injected clauses are tagged with ``_name`` so that a later injection with
the same name replaces the earlier one instead of stacking a duplicate.
"""

import copy
from typing import Any, Dict, List, Optional, Sequence

from fedjoin.core.logging import get_logger

logger = get_logger(__name__)


def terms_filter(field: str, values: Sequence[Any], name: str) -> Dict[str, Any]:
    """Restrict ``field`` to ``values``."""
    return {"terms": {field: list(values), "_name": name}}


def match_none_filter(name: str) -> Dict[str, Any]:
    """A filter guaranteed to match no document."""
    return {"bool": {"must_not": [{"match_all": {}}], "_name": name}}


def clause_name(clause: Any) -> Optional[str]:
    """The ``_name`` tag of a single-key query clause, if any."""
    if not isinstance(clause, dict) or len(clause) != 1:
        return None
    body = next(iter(clause.values()))
    if isinstance(body, dict):
        return body.get("_name")
    return None


class FilterInjector:
    """
    Rewrites the filter clauses of a search body with computed join values.
    """

    def build_filter(self, field: str, values: Sequence[Any], name: str) -> Dict[str, Any]:
        """
        Build the clause for one join result.

        An empty value list yields a never-matching clause rather than no
        clause, so an empty join never widens the result set.
        """
        if values:
            return terms_filter(field, values, name)
        return match_none_filter(name)

    def inject(
        self,
        template: Dict[str, Any],
        field: str,
        values: Sequence[Any],
        name: str,
    ) -> Dict[str, Any]:
        """
        Insert or replace the join filter named ``name``.

        Args:
            template: Search request body; not modified
            field: Target field restricted by the join
            values: Values computed by the planner
            name: Tag identifying the injected filter

        Returns:
            A rewritten copy of the body
        """
        body = copy.deepcopy(template)
        filters = self._filters(body)
        clause = self.build_filter(field, values, name)

        kept = [existing for existing in filters if clause_name(existing) != name]
        if len(kept) != len(filters):
            logger.debug("Replacing injected filter", name=name)
        kept.append(clause)
        filters[:] = kept
        return body

    @staticmethod
    def _filters(body: Dict[str, Any]) -> List[Any]:
        """
        The mutable ``query.bool.filter`` list of ``body``.

        A missing query becomes ``match_all``; any other non-bool query is
        moved under ``bool.must``.
        """
        query = body.get("query")
        if not query:
            query = {"match_all": {}}
        if "bool" not in query or len(query) != 1:
            query = {"bool": {"must": [query]}}
        body["query"] = query

        bool_query = query["bool"]
        filters = bool_query.get("filter")
        if filters is None:
            filters = []
        elif isinstance(filters, dict):
            filters = [filters]
        bool_query["filter"] = filters
        return filters
