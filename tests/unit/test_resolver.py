import pytest

from agentflow.contracts import TaskStep
from agentflow.errors import CyclicDependencyError, ValidationError
from agentflow.resolver import build_execution_plan, dependents_of, find_cycle


def _task(step_id, *deps):
    return TaskStep(id=step_id, executor="e", depends_on=deps)


def test_plan_groups_independent_steps():
    steps = [_task("a"), _task("b", "a"), _task("c", "a"), _task("d", "b", "c")]
    assert build_execution_plan(steps) == [["a"], ["b", "c"], ["d"]]


def test_plan_keeps_declaration_order_within_batch():
    steps = [_task("z"), _task("m"), _task("a"), _task("late", "z")]
    plan = build_execution_plan(steps)
    assert plan[0] == ["z", "m", "a"], f"Unexpected first batch: {plan}"


def test_every_step_appears_in_exactly_one_batch():
    steps = [
        _task("fetch"),
        _task("parse", "fetch"),
        _task("lint", "fetch"),
        _task("index", "parse"),
        _task("publish", "index", "lint"),
        _task("audit"),
    ]
    plan = build_execution_plan(steps)
    flat = [step_id for batch in plan for step_id in batch]
    assert sorted(flat) == sorted(step.id for step in steps)
    assert len(flat) == len(set(flat))

    position = {step_id: index for index, batch in enumerate(plan) for step_id in batch}
    for step in steps:
        for dep in step.depends_on:
            assert position[dep] < position[step.id], f"{dep} must run before {step.id}"


def test_duplicate_dependencies_are_counted_once():
    steps = [_task("a"), TaskStep(id="b", executor="e", depends_on=("a", "a"))]
    assert build_execution_plan(steps) == [["a"], ["b"]]


def test_cycle_is_reported_with_its_members():
    steps = [_task("a", "c"), _task("b", "a"), _task("c", "b")]
    with pytest.raises(CyclicDependencyError) as exc_info:
        build_execution_plan(steps)

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1], f"Cycle should be closed: {cycle}"
    assert set(cycle) == {"a", "b", "c"}


def test_find_cycle_returns_none_for_dag():
    assert find_cycle([_task("a"), _task("b", "a")]) is None


def test_unknown_dependency_is_a_validation_error():
    with pytest.raises(ValidationError, match="undefined step 'ghost'") as exc_info:
        build_execution_plan([_task("a", "ghost")])
    assert not isinstance(exc_info.value, CyclicDependencyError)


def test_empty_plan():
    assert build_execution_plan([]) == []


def test_dependents_of_is_transitive():
    steps = [_task("a"), _task("b", "a"), _task("c", "b"), _task("d")]
    assert dependents_of(steps, "a") == {"b", "c"}
    assert dependents_of(steps, "d") == set()
