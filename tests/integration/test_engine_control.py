import asyncio
import textwrap

import pytest

from agentflow.engine import WorkflowEngine
from agentflow.execute import ExecutionContext, StepExecutor
from agentflow.loader import load_definition
from agentflow.persistence import (
    InMemoryStateStore,
    StepStatus,
    StepUpdate,
    WorkflowStatus,
)

SLOW_THEN_FAST = """
id: slow-then-fast
steps:
  - {id: slow, type: task, executor: slow, inputBindings: {delay: 0.3}}
  - {id: fast, type: task, executor: echo, dependsOn: [slow]}
"""


def _workflow(document: str):
    return load_definition(textwrap.dedent(document))


async def _wait_for_status(engine, instance_id, status, timeout=2.0):
    async def poll():
        while (await engine.get_status(instance_id)).status != status:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_cancel_is_idempotent(engine, calls):
    instance_id = await engine.start(_workflow(SLOW_THEN_FAST))
    await _wait_for_status(engine, instance_id, WorkflowStatus.RUNNING)

    assert await engine.cancel(instance_id) is True
    assert await engine.cancel(instance_id) is False, "second cancel is a no-op"

    instance = await engine.wait(instance_id, timeout=2.0)
    assert instance.status == WorkflowStatus.CANCELLED
    assert instance.steps["fast"].status == StepStatus.PENDING
    assert ("echo", {}) not in calls
    assert await engine.cancel(instance_id) is False

    with pytest.raises(KeyError):
        await engine.cancel("unknown")


@pytest.mark.asyncio
async def test_pause_and_resume_at_batch_boundary(engine, calls):
    instance_id = await engine.start(_workflow(SLOW_THEN_FAST))
    await _wait_for_status(engine, instance_id, WorkflowStatus.RUNNING)

    assert await engine.pause(instance_id) is True
    assert await engine.pause(instance_id) is False
    await asyncio.sleep(0.45)

    paused = await engine.get_status(instance_id)
    assert paused.status == WorkflowStatus.PAUSED
    assert paused.steps["slow"].status == StepStatus.COMPLETED, "running batch finishes"
    assert paused.steps["fast"].status == StepStatus.PENDING, "next batch waits"

    assert await engine.resume(instance_id) is True
    instance = await engine.wait(instance_id, timeout=2.0)
    assert instance.status == WorkflowStatus.COMPLETED
    assert ("echo", {}) in calls


@pytest.mark.asyncio
async def test_cancel_paused_instance_takes_effect_immediately(engine):
    instance_id = await engine.start(_workflow(SLOW_THEN_FAST))
    await _wait_for_status(engine, instance_id, WorkflowStatus.RUNNING)
    await engine.pause(instance_id)

    assert await engine.cancel(instance_id) is True
    assert (await engine.get_status(instance_id)).status == WorkflowStatus.CANCELLED
    instance = await engine.wait(instance_id, timeout=2.0)
    assert instance.status == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_wait_times_out(engine):
    instance_id = await engine.start(_workflow(SLOW_THEN_FAST))
    with pytest.raises(asyncio.TimeoutError):
        await engine.wait(instance_id, timeout=0.05)
    await engine.cancel(instance_id)
    await engine.wait(instance_id, timeout=2.0)


@pytest.mark.asyncio
async def test_list_instances_by_status(engine):
    done = await engine.run(_workflow("id: quick\nsteps:\n  - {id: a, type: task, executor: echo}\n"))
    running_id = await engine.start(_workflow(SLOW_THEN_FAST))
    await _wait_for_status(engine, running_id, WorkflowStatus.RUNNING)

    completed = await engine.list_instances(WorkflowStatus.COMPLETED)
    assert [item.id for item in completed] == [done.id]
    running = await engine.list_instances(WorkflowStatus.RUNNING)
    assert [item.id for item in running] == [running_id]

    await engine.shutdown()


@pytest.mark.asyncio
async def test_recover_resumes_from_persisted_state(executor, store, config, calls):
    definition = _workflow(
        """
        id: recoverable
        steps:
          - {id: a, type: task, executor: echo, inputBindings: {step: a}}
          - {id: b, type: task, executor: echo, dependsOn: [a], inputBindings: {prev: "${a.step}"}}
          - {id: c, type: task, executor: echo, dependsOn: [b], inputBindings: {step: c}}
        """
    )
    instance_id = await store.create_instance(definition, {})
    await store.transition_instance(
        instance_id, [WorkflowStatus.CREATED], WorkflowStatus.INITIALIZED
    )
    await store.transition_instance(
        instance_id, [WorkflowStatus.INITIALIZED], WorkflowStatus.RUNNING
    )
    await store.transition_step(instance_id, "a", StepStatus.PENDING, StepStatus.RUNNING)
    await store.transition_step(
        instance_id, "a", StepStatus.RUNNING, StepStatus.COMPLETED, StepUpdate(outputs={"step": "a"})
    )
    await store.transition_step(
        instance_id, "b", StepStatus.PENDING, StepStatus.RUNNING, StepUpdate(attempts=1)
    )

    engine = WorkflowEngine(executor, store=store, config=config)
    assert await engine.recover(instance_id) is True
    instance = await engine.wait(instance_id, timeout=2.0)

    assert instance.status == WorkflowStatus.COMPLETED
    assert calls == [("echo", {"prev": "a"}), ("echo", {"step": "c"})], "completed steps are reused"
    assert instance.steps["b"].attempts == 2
    assert await engine.recover(instance_id) is False, "terminal instances are not recovered"


class InstrumentedStore(InMemoryStateStore):
    """Records the status of every dependency whenever a step starts running."""

    def __init__(self):
        super().__init__()
        self.violations = []
        self.started = []

    async def transition_step(self, instance_id, step_id, from_status, to_status, payload=None):
        if to_status == StepStatus.RUNNING:
            instance = await self.get_instance(instance_id)
            definition = instance.definition
            if definition.has_step(step_id):
                self.started.append(step_id)
                for dep in definition.get_step(step_id).depends_on:
                    status = instance.step_state(dep).status
                    if status not in (StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.FAILED):
                        self.violations.append((step_id, dep, status))
        return await super().transition_step(
            instance_id, step_id, from_status, to_status, payload
        )


@pytest.mark.asyncio
async def test_steps_never_start_before_dependencies_settle(executor, config):
    store = InstrumentedStore()
    engine = WorkflowEngine(executor, store=store, config=config)
    definition = _workflow(
        """
        id: diamond
        steps:
          - {id: root, type: task, executor: slow, inputBindings: {delay: 0.05}}
          - {id: left, type: task, executor: slow, dependsOn: [root], inputBindings: {delay: 0.02}}
          - {id: right, type: task, executor: echo, dependsOn: [root]}
          - {id: guarded, type: task, executor: echo, dependsOn: [root], when: "false"}
          - {id: merge, type: task, executor: echo, dependsOn: [left, right, guarded]}
        """
    )
    instance = await engine.run(definition)

    assert instance.status == WorkflowStatus.COMPLETED
    assert store.violations == [], f"Steps started early: {store.violations}"
    assert store.started.index("merge") > store.started.index("left")


@pytest.mark.asyncio
async def test_concurrent_schedulers_execute_a_step_once(executor, store, config, calls):
    definition = _workflow(
        """
        id: shared
        steps:
          - {id: work, type: task, executor: slow, inputBindings: {delay: 0.1}}
        """
    )
    instance_id = await store.create_instance(definition, {})
    await store.transition_instance(
        instance_id, [WorkflowStatus.CREATED], WorkflowStatus.RUNNING
    )
    schedulers = [StepExecutor(store, executor, config=config.engine) for _ in range(2)]
    step = definition.get_step("work")

    results = await asyncio.gather(
        *(
            scheduler.run(
                ExecutionContext(instance_id=instance_id, definition=definition, scope={}),
                step,
            )
            for scheduler in schedulers
        )
    )

    assert [result.status for result in results] == [StepStatus.COMPLETED] * 2
    assert [result.outputs for result in results] == [{"slept": 0.1}] * 2
    assert calls == [("slow", 0.1)], "only one scheduler may run the step"


@pytest.mark.asyncio
async def test_finished_instances_release_their_handles(engine):
    definition = _workflow(
        """
        id: nested-handles
        steps:
          - {id: first, type: task, executor: echo}
          - id: sub
            type: subworkflow
            dependsOn: [first]
            workflow:
              id: inner
              steps:
                - {id: say, type: task, executor: echo}
        """
    )
    for _ in range(5):
        instance = await engine.run(definition)
        assert instance.status == WorkflowStatus.COMPLETED, f"Unexpected error: {instance.error}"

    assert engine._handles == {}, "handles are dropped once an instance settles"
    assert len(await engine.list_instances(WorkflowStatus.COMPLETED)) == 10
