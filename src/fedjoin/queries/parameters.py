"""
Query template population.

Result and activation queries are templates holding ``@name@`` placeholders.
A datasource carries one populator that knows how values must be rendered
for its backend (SQL literals, JSON values).
"""

import json
import math
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from fedjoin.core.errors import ConfigurationError

if TYPE_CHECKING:
    from fedjoin.queries.models import ExecutionContext

PLACEHOLDER = re.compile(r"@([A-Za-z_][A-Za-z0-9_.]*)@")


class ParameterPopulator(ABC):
    """Renders context variables into a query template."""

    def populate_parameters(self, query: str, context: "ExecutionContext") -> str:
        """
        Replace every ``@name@`` placeholder with the rendered variable.

        Args:
            query: Query template
            context: Execution context holding the variables

        Returns:
            The populated query text

        Raises:
            ConfigurationError: if a placeholder has no bound variable
        """
        if not query:
            return query

        def _replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name not in context.variables:
                raise ConfigurationError(f"Unbound query variable '{name}'")
            return self.render(context.variables[name])

        return PLACEHOLDER.sub(_replace, query)

    @abstractmethod
    def render(self, value: Any) -> str:
        """Render one variable value for the backend."""


class SqlParameterPopulator(ParameterPopulator):
    """Renders values as SQL literals. Lists become comma separated literals."""

    def __init__(self, escape_backslash: bool = False):
        self.escape_backslash = escape_backslash

    def render(self, value: Any) -> str:
        if isinstance(value, (list, tuple, set, frozenset)):
            if not value:
                # IN (NULL) never matches
                return "NULL"
            return ", ".join(self._literal(item) for item in value)
        return self._literal(value)

    def _literal(self, value: Any) -> str:
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, float) and not math.isfinite(value):
            # nan and inf have no SQL literal
            return "NULL"
        if isinstance(value, (int, float)):
            return repr(value)
        text = str(value)
        if self.escape_backslash:
            text = text.replace("\\", "\\\\")
        return "'" + text.replace("'", "''") + "'"


class JsonParameterPopulator(ParameterPopulator):
    """Renders values as JSON, for search request bodies."""

    def render(self, value: Any) -> str:
        if isinstance(value, (set, frozenset, tuple)):
            value = list(value)
        return json.dumps(value, sort_keys=True, default=str)
