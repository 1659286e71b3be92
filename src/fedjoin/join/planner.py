"""
Join relation planner.

Resolves one JoinRelation into the flat list of values that the filter
injector splices into the target search query.

Two reduction modes are supported:

- SEQUENCE: steps run in declared order. The values extracted from one
  step are bound as a variable for the next step. An empty step ends the
  relation with no values, since nothing downstream can match.
- SET: steps run concurrently and their extracted values are combined by
  union or intersection.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from structlog.contextvars import bound_contextvars

from fedjoin.core.config import settings
from fedjoin.core.errors import JoinError
from fedjoin.core.logging import get_logger, log_performance
from fedjoin.queries.base import BaseQuery
from fedjoin.queries.models import ExecutionContext, ResultSet

logger = get_logger(__name__)


class ReductionMode(Enum):
    """How the step results of a relation combine."""
    SEQUENCE = "sequence"
    SET = "set"


class SetOperation(Enum):
    """Set-mode combination of branch values."""
    UNION = "union"
    INTERSECTION = "intersection"


class FailurePolicy(Enum):
    """Set-mode handling of a failing branch."""
    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


@dataclass
class JoinStep:
    """
    One query of a relation.

    ``column`` is extracted from every binding. In sequence mode the
    extracted values are bound as ``variable_name`` for the next step.
    """
    query: BaseQuery
    column: str
    variable_name: Optional[str] = None

    @property
    def binding_name(self) -> str:
        return self.variable_name or self.column


@dataclass
class JoinRelation:
    """Ordered steps plus the rule that reduces them to one value list."""
    relation_id: str
    steps: List[JoinStep]
    mode: ReductionMode = ReductionMode.SEQUENCE
    set_operation: SetOperation = SetOperation.UNION
    failure_policy: FailurePolicy = field(
        default_factory=lambda: FailurePolicy(settings.join_failure_policy)
    )

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Relation {self.relation_id} has no steps")


def _value_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def distinct_values(result: ResultSet, column: str) -> List[Any]:
    """Distinct non-null values of ``column`` in first-appearance order."""
    seen = set()
    values = []
    for value in result.column(column):
        if value is None:
            continue
        key = _value_key(value)
        if key in seen:
            continue
        seen.add(key)
        values.append(value)
    return values


class JoinPlanner:
    """
    Executes the steps of a relation and reduces their results.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    @log_performance("Join relation resolution")
    async def resolve(self, relation: JoinRelation, context: ExecutionContext) -> List[Any]:
        """
        Resolve a relation into an injectable value list.

        Args:
            relation: Relation to resolve
            context: Caller identity, variables and force flag

        Returns:
            Distinct values, possibly empty

        Raises:
            JoinError: if a step fails (see FailurePolicy for set mode)
        """
        with bound_contextvars(relation_id=relation.relation_id):
            if relation.mode == ReductionMode.SEQUENCE:
                return await self._resolve_sequence(relation, context)
            return await self._resolve_set(relation, context)

    async def _run_step(
        self,
        relation: JoinRelation,
        index: int,
        step: JoinStep,
        context: ExecutionContext,
    ) -> ResultSet:
        try:
            return await step.query.fetch_results(
                context,
                force_refresh=context.force_refresh,
                variable_binding=step.binding_name,
            )
        except Exception as e:
            raise JoinError(
                relation.relation_id,
                f"Step failed: {e}",
                branch_index=index,
                datasource_id=step.query.datasource_id,
                cause=e,
            ) from e

    async def _resolve_sequence(self, relation: JoinRelation, context: ExecutionContext) -> List[Any]:
        values: List[Any] = []
        step_context = context
        for index, step in enumerate(relation.steps):
            if index > 0:
                previous = relation.steps[index - 1]
                step_context = step_context.with_variables(**{previous.binding_name: values})

            result = await self._run_step(relation, index, step, step_context)
            values = distinct_values(result, step.column)
            if not values:
                self.logger.debug(
                    "Sequence short-circuited on empty step",
                    step=index,
                    datasource_id=step.query.datasource_id,
                    activated=result.query_activated,
                )
                return []
        return values

    async def _resolve_set(self, relation: JoinRelation, context: ExecutionContext) -> List[Any]:
        outcomes = await asyncio.gather(
            *(self._run_step(relation, index, step, context) for index, step in enumerate(relation.steps)),
            return_exceptions=True,
        )

        branches: List[Tuple[int, List[Any]]] = []
        failures: List[JoinError] = []
        for index, (step, outcome) in enumerate(zip(relation.steps, outcomes)):
            if isinstance(outcome, JoinError):
                failures.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            branches.append((index, distinct_values(outcome, step.column)))

        if failures:
            if relation.failure_policy == FailurePolicy.FAIL_FAST or not branches:
                raise failures[0]
            for failure in failures:
                self.logger.warning(
                    "Dropping failed join branch",
                    branch=failure.branch_index,
                    datasource_id=failure.datasource_id,
                    error=str(failure.cause),
                )

        if relation.set_operation == SetOperation.UNION:
            return self._union(branch for _, branch in branches)
        return self._intersection([branch for _, branch in branches])

    @staticmethod
    def _union(branches) -> List[Any]:
        seen = set()
        merged = []
        for branch in branches:
            for value in branch:
                key = _value_key(value)
                if key not in seen:
                    seen.add(key)
                    merged.append(value)
        return merged

    @staticmethod
    def _intersection(branches: Sequence[List[Any]]) -> List[Any]:
        if not branches:
            return []
        others = [{_value_key(value) for value in branch} for branch in branches[1:]]
        return [
            value
            for value in branches[0]
            if all(_value_key(value) in keys for keys in others)
        ]

    async def resolve_many(
        self,
        relations: Dict[str, JoinRelation],
        context: ExecutionContext,
    ) -> Dict[str, List[Any]]:
        """Resolve several independent relations concurrently."""
        ids = list(relations)
        results = await asyncio.gather(*(self.resolve(relations[i], context) for i in ids))
        return dict(zip(ids, results))
