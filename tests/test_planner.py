from __future__ import annotations

import pytest

from conftest import failing_stub, make_stub
from fedjoin.core.errors import BackendConnectionError, ExecutionError, JoinError
from fedjoin.join.planner import (
    FailurePolicy,
    JoinPlanner,
    JoinRelation,
    JoinStep,
    ReductionMode,
    SetOperation,
    distinct_values,
)
from fedjoin.queries.models import ExecutionContext, ResultSet


@pytest.fixture
def planner() -> JoinPlanner:
    return JoinPlanner()


def test_distinct_values_keeps_first_appearance_order() -> None:
    result = ResultSet([{"id": 3}, {"id": 1}, {"id": None}, {"id": 3}, {"other": 1}, {"id": 2}])
    assert distinct_values(result, "id") == [3, 1, 2]


def test_relation_requires_steps() -> None:
    with pytest.raises(ValueError):
        JoinRelation(relation_id="empty", steps=[])


@pytest.mark.asyncio
async def test_sequence_binds_previous_values_for_next_step(planner, context) -> None:
    regions = make_stub("select region_id from region where name = 'north'", "regions",
                        rows=[{"region_id": 4}, {"region_id": 9}, {"region_id": 4}])
    companies = make_stub("select id from company where region_id in (@region_id@)", "companies",
                          rows=[{"id": "c1"}, {"id": "c2"}])
    relation = JoinRelation(
        relation_id="companies-in-region",
        steps=[JoinStep(regions, "region_id"), JoinStep(companies, "id")],
    )

    values = await planner.resolve(relation, context)

    assert values == ["c1", "c2"]
    assert companies.executed == ["select id from company where region_id in (4, 9)"]


@pytest.mark.asyncio
async def test_sequence_uses_explicit_variable_name(planner, context) -> None:
    first = make_stub("select a from t", "first", rows=[{"a": "x"}])
    second = make_stub("select b from u where a in (@keys@)", "second", rows=[{"b": 1}])
    relation = JoinRelation("r", [JoinStep(first, "a", variable_name="keys"), JoinStep(second, "b")])

    assert await planner.resolve(relation, context) == [1]
    assert second.executed == ["select b from u where a in ('x')"]


@pytest.mark.asyncio
async def test_sequence_short_circuits_on_empty_step(planner, context) -> None:
    first = make_stub("select a from t", "first", rows=[])
    second = make_stub("select b from u where a in (@a@)", "second", rows=[{"b": 1}])
    relation = JoinRelation("r", [JoinStep(first, "a"), JoinStep(second, "b")])

    assert await planner.resolve(relation, context) == []
    assert second.executed == []


@pytest.mark.asyncio
async def test_sequence_short_circuits_when_step_not_activated(planner, context) -> None:
    first = make_stub("select a from t", "first", rows=lambda q: [] if q.startswith("check") else [{"a": 1}],
                      activation_query="check")
    relation = JoinRelation("r", [JoinStep(first, "a")])

    assert await planner.resolve(relation, context) == []
    assert first.executed == ["check"]


@pytest.mark.asyncio
async def test_sequence_step_failure_is_attributed(planner, context) -> None:
    ok = make_stub("select a from t", "ok", rows=[{"a": 1}])
    broken = failing_stub("broken")
    relation = JoinRelation("r", [JoinStep(ok, "a"), JoinStep(broken, "b")])

    with pytest.raises(JoinError) as excinfo:
        await planner.resolve(relation, context)

    assert excinfo.value.relation_id == "r"
    assert excinfo.value.branch_index == 1
    assert excinfo.value.datasource_id == "broken"
    assert isinstance(excinfo.value.cause, ExecutionError)


@pytest.mark.asyncio
async def test_set_union_preserves_priority_order(planner, context) -> None:
    a = make_stub("select id from a", "a", rows=[{"id": 2}, {"id": 1}])
    b = make_stub("select id from b", "b", rows=[{"id": 3}, {"id": 2}])
    relation = JoinRelation("r", [JoinStep(a, "id"), JoinStep(b, "id")], mode=ReductionMode.SET)

    assert await planner.resolve(relation, context) == [2, 1, 3]


@pytest.mark.asyncio
async def test_set_intersection_follows_first_branch_order(planner, context) -> None:
    a = make_stub("select id from a", "a", rows=[{"id": 3}, {"id": 1}, {"id": 2}])
    b = make_stub("select id from b", "b", rows=[{"id": 2}, {"id": 3}])
    relation = JoinRelation(
        "r",
        [JoinStep(a, "id"), JoinStep(b, "id")],
        mode=ReductionMode.SET,
        set_operation=SetOperation.INTERSECTION,
    )

    assert await planner.resolve(relation, context) == [3, 2]


@pytest.mark.asyncio
async def test_set_fail_fast_raises_lowest_index_failure(planner, context) -> None:
    relation = JoinRelation(
        "r",
        [
            JoinStep(make_stub("select id from a", "a", rows=[{"id": 1}]), "id"),
            JoinStep(failing_stub("b"), "id"),
            JoinStep(failing_stub("c"), "id"),
        ],
        mode=ReductionMode.SET,
        failure_policy=FailurePolicy.FAIL_FAST,
    )

    with pytest.raises(JoinError) as excinfo:
        await planner.resolve(relation, context)
    assert excinfo.value.branch_index == 1
    assert excinfo.value.datasource_id == "b"


@pytest.mark.asyncio
async def test_set_best_effort_drops_failed_branches(planner, context) -> None:
    relation = JoinRelation(
        "r",
        [
            JoinStep(failing_stub("a"), "id"),
            JoinStep(make_stub("select id from b", "b", rows=[{"id": 5}]), "id"),
        ],
        mode=ReductionMode.SET,
        failure_policy=FailurePolicy.BEST_EFFORT,
    )

    assert await planner.resolve(relation, context) == [5]


@pytest.mark.asyncio
async def test_set_best_effort_raises_when_every_branch_fails(planner, context) -> None:
    relation = JoinRelation(
        "r",
        [JoinStep(failing_stub("a"), "id"), JoinStep(failing_stub("b"), "id")],
        mode=ReductionMode.SET,
        failure_policy=FailurePolicy.BEST_EFFORT,
    )

    with pytest.raises(JoinError) as excinfo:
        await planner.resolve(relation, context)
    assert excinfo.value.branch_index == 0


@pytest.mark.asyncio
async def test_force_refresh_is_propagated_to_every_step(planner, cache) -> None:
    query = make_stub("select id from a", "a", cache=cache, rows=[{"id": 1}])
    relation = JoinRelation("r", [JoinStep(query, "id")])

    await planner.resolve(relation, ExecutionContext(username="fred"))
    await planner.resolve(relation, ExecutionContext(username="fred"))
    assert len(query.executed) == 1

    await planner.resolve(relation, ExecutionContext(username="fred", force_refresh=True))
    assert len(query.executed) == 2


@pytest.mark.asyncio
async def test_cache_is_partitioned_by_caller(planner, cache) -> None:
    query = make_stub("select id from a", "a", cache=cache, rows=[{"id": 1}])
    relation = JoinRelation("r", [JoinStep(query, "id")])

    await planner.resolve(relation, ExecutionContext(username="fred"))
    await planner.resolve(relation, ExecutionContext(username="wilma"))

    assert len(query.executed) == 2


@pytest.mark.asyncio
async def test_resolve_many_keys_results_by_relation(planner, context) -> None:
    relations = {
        "left": JoinRelation("left", [JoinStep(make_stub("select 1", "l", rows=[{"v": 1}]), "v")]),
        "right": JoinRelation("right", [JoinStep(make_stub("select 2", "r", rows=[{"v": 2}]), "v")]),
    }

    assert await planner.resolve_many(relations, context) == {"left": [1], "right": [2]}


@pytest.mark.asyncio
async def test_best_effort_drops_branch_whose_connection_setup_fails(planner, context) -> None:
    unreachable = make_stub("select id from a", "a", init_error=TimeoutError("connect timed out"))
    relation = JoinRelation(
        "r",
        [
            JoinStep(unreachable, "id"),
            JoinStep(make_stub("select id from b", "b", rows=[{"id": 5}]), "id"),
        ],
        mode=ReductionMode.SET,
        failure_policy=FailurePolicy.BEST_EFFORT,
    )

    assert await planner.resolve(relation, context) == [5]
    assert unreachable.executed == []


@pytest.mark.asyncio
async def test_connection_setup_failure_is_attributed_to_its_datasource(planner, context) -> None:
    unreachable = make_stub("select id from a", "a", init_error=ValueError("invalid literal for int()"))
    relation = JoinRelation("r", [JoinStep(unreachable, "id")])

    with pytest.raises(JoinError) as excinfo:
        await planner.resolve(relation, context)

    assert excinfo.value.datasource_id == "a"
    assert isinstance(excinfo.value.cause, BackendConnectionError)
    assert isinstance(excinfo.value.cause.cause, ValueError)
