import asyncio

import pytest

from agentflow.contracts import TaskStep, WorkflowDefinition
from agentflow.persistence import (
    CompensationRecord,
    InMemoryStateStore,
    InstanceUpdate,
    SQLiteStateStore,
    StepErrorInfo,
    StepStatus,
    StepUpdate,
    WorkflowErrorInfo,
    WorkflowStatus,
)

DEFINITION = WorkflowDefinition(
    id="wf",
    steps=[
        TaskStep(id="a", executor="e"),
        TaskStep(id="b", executor="e", depends_on=("a",)),
    ],
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStateStore()
        return
    store = SQLiteStateStore(tmp_path / "wf.db")
    yield store
    store.close()


async def _running_instance(store, **kwargs):
    instance_id = await store.create_instance(DEFINITION, {"n": 1}, **kwargs)
    await store.transition_instance(
        instance_id, [WorkflowStatus.CREATED], WorkflowStatus.INITIALIZED
    )
    await store.transition_instance(
        instance_id, [WorkflowStatus.INITIALIZED], WorkflowStatus.RUNNING
    )
    return instance_id


@pytest.mark.asyncio
async def test_create_and_get_instance(store):
    instance_id = await store.create_instance(DEFINITION, {"n": 1})
    instance = await store.get_instance(instance_id)

    assert instance is not None
    assert instance.status == WorkflowStatus.CREATED
    assert instance.definition == DEFINITION
    assert instance.inputs == {"n": 1}
    assert set(instance.steps) == {"a", "b"}
    assert all(state.status == StepStatus.PENDING for state in instance.steps.values())
    assert await store.get_instance("missing") is None


@pytest.mark.asyncio
async def test_explicit_instance_id_and_parent(store):
    parent_id = await store.create_instance(DEFINITION, {})
    child_id = await store.create_instance(
        DEFINITION, {}, instance_id="child-1", parent_id=parent_id
    )
    assert child_id == "child-1"
    child = await store.get_instance("child-1")
    assert child.parent_id == parent_id


@pytest.mark.asyncio
async def test_step_transitions_are_compare_and_swap(store):
    instance_id = await _running_instance(store)

    assert await store.transition_step(
        instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING, StepUpdate(attempts=1)
    )
    assert not await store.transition_step(
        instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING
    ), "second start from pending must lose"

    assert await store.transition_step(
        instance_id,
        "a",
        StepStatus.RUNNING,
        StepStatus.COMPLETED,
        StepUpdate(outputs={"x": 1}),
    )
    state = await store.get_step(instance_id, "a")
    assert state.status == StepStatus.COMPLETED
    assert state.outputs == {"x": 1}
    assert state.attempts == 1
    assert state.started_at is not None and state.completed_at is not None
    assert state.completion_seq is not None


@pytest.mark.asyncio
async def test_only_one_concurrent_start_wins(store):
    instance_id = await _running_instance(store)
    results = await asyncio.gather(
        *(
            store.transition_step(instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING)
            for _ in range(5)
        )
    )
    assert results.count(True) == 1, f"Expected exactly one winner, got {results}"


@pytest.mark.asyncio
async def test_nested_keys_are_created_lazily(store):
    instance_id = await _running_instance(store)
    key = "loop[0]/body"

    assert await store.get_step(instance_id, key) is None
    assert await store.transition_step(
        instance_id, key, StepStatus.PENDING, StepStatus.RUNNING
    )
    state = await store.get_step(instance_id, key)
    assert state.step_id == key
    assert state.status == StepStatus.RUNNING


@pytest.mark.asyncio
async def test_completion_sequence_is_monotonic(store):
    instance_id = await _running_instance(store)
    for step_id in ("b", "a"):
        await store.transition_step(instance_id, step_id, StepStatus.PENDING, StepStatus.RUNNING)
        await store.transition_step(
            instance_id, step_id, StepStatus.RUNNING, StepStatus.COMPLETED
        )

    instance = await store.get_instance(instance_id)
    assert instance.steps["b"].completion_seq < instance.steps["a"].completion_seq


@pytest.mark.asyncio
async def test_error_is_kept_until_cleared(store):
    instance_id = await _running_instance(store)
    error = StepErrorInfo(error_type="RuntimeError", message="boom", attempt=1)
    await store.transition_step(instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING)
    await store.transition_step(
        instance_id,
        "a",
        StepStatus.RUNNING,
        StepStatus.PENDING,
        StepUpdate(retry_count=1, error=error),
    )
    await store.transition_step(instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING)
    state = await store.get_step(instance_id, "a")
    assert state.error == error
    assert state.retry_count == 1

    await store.transition_step(
        instance_id, "a", StepStatus.RUNNING, StepStatus.COMPLETED, StepUpdate(error=None)
    )
    assert (await store.get_step(instance_id, "a")).error is None


@pytest.mark.asyncio
async def test_instance_transitions_and_frozen_terminal_state(store):
    instance_id = await _running_instance(store)
    instance = await store.get_instance(instance_id)
    assert instance.started_at is not None

    assert not await store.transition_instance(
        instance_id, [WorkflowStatus.PAUSED], WorkflowStatus.RUNNING
    )
    error = WorkflowErrorInfo(step_id="a", attempt=1, error_type="X", message="bad")
    assert await store.transition_instance(
        instance_id,
        [WorkflowStatus.RUNNING],
        WorkflowStatus.FAILED,
        InstanceUpdate(error=error),
    )

    failed = await store.get_instance(instance_id)
    assert failed.status == WorkflowStatus.FAILED
    assert failed.error == error
    assert failed.completed_at is not None

    assert not await store.transition_instance(
        instance_id, [WorkflowStatus.FAILED], WorkflowStatus.RUNNING
    ), "terminal instances are frozen"
    assert not await store.transition_step(
        instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING
    ), "steps of terminal instances are frozen"


@pytest.mark.asyncio
async def test_outputs_recorded_on_completion(store):
    instance_id = await _running_instance(store)
    await store.transition_instance(
        instance_id,
        [WorkflowStatus.RUNNING],
        WorkflowStatus.COMPLETED,
        InstanceUpdate(outputs={"total": 3}),
    )
    assert (await store.get_instance(instance_id)).outputs == {"total": 3}


@pytest.mark.asyncio
async def test_variables_and_compensation_log(store):
    instance_id = await _running_instance(store)
    await store.append_variable(instance_id, "order", {"id": 7})
    await store.append_variable(instance_id, "total", 12)
    await store.append_compensation(
        instance_id,
        CompensationRecord(step_id="a", compensation_step_id="undo_a", succeeded=True),
    )
    await store.append_compensation(
        instance_id,
        CompensationRecord(
            step_id="b", compensation_step_id="undo_b", succeeded=False, error="nope"
        ),
    )

    instance = await store.get_instance(instance_id)
    assert instance.variables == {"order": {"id": 7}, "total": 12}
    assert [record.step_id for record in instance.compensation_log] == ["a", "b"]
    assert instance.compensation_log[1].error == "nope"


@pytest.mark.asyncio
async def test_list_instances_filters_by_status(store):
    running = await _running_instance(store)
    created = await store.create_instance(DEFINITION, {})

    all_ids = {instance.id for instance in await store.list_instances()}
    assert all_ids == {running, created}
    only_running = await store.list_instances(WorkflowStatus.RUNNING)
    assert [instance.id for instance in only_running] == [running]


@pytest.mark.asyncio
async def test_snapshots_are_copies():
    store = InMemoryStateStore()
    instance_id = await store.create_instance(DEFINITION, {"items": [1]})
    snapshot = await store.get_instance(instance_id)
    snapshot.inputs["items"].append(2)
    assert (await store.get_instance(instance_id)).inputs == {"items": [1]}


@pytest.mark.asyncio
async def test_duplicate_instance_id_is_rejected():
    store = InMemoryStateStore()
    await store.create_instance(DEFINITION, {}, instance_id="dup")
    with pytest.raises(ValueError):
        await store.create_instance(DEFINITION, {}, instance_id="dup")


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = tmp_path / "wf.db"
    store = SQLiteStateStore(db_path)
    instance_id = await _running_instance(store)
    await store.transition_step(instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING)
    store.close()

    reopened = SQLiteStateStore(db_path)
    instance = await reopened.get_instance(instance_id)
    assert instance.status == WorkflowStatus.RUNNING
    assert instance.steps["a"].status == StepStatus.RUNNING
    reopened.close()
