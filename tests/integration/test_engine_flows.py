import asyncio
import textwrap

import pytest

from agentflow.loader import load_definition
from agentflow.persistence import StepStatus, WorkflowStatus


def _workflow(document: str):
    return load_definition(textwrap.dedent(document))


@pytest.mark.asyncio
async def test_linear_workflow_passes_outputs_downstream(engine, calls):
    definition = _workflow(
        """
        id: linear
        inputs:
          n: {type: integer, required: true}
        outputs:
          result: ${doubled}
          echoed: ${fetch.value}
        steps:
          - id: fetch
            type: task
            executor: echo
            inputBindings:
              value: ${inputs.n}
          - id: double
            type: task
            executor: math
            action: double
            dependsOn: [fetch]
            outputVar: doubled
            inputBindings:
              value: ${fetch.value}
        """
    )
    instance = await engine.run(definition, {"n": 21})

    assert instance.status == WorkflowStatus.COMPLETED, f"Unexpected error: {instance.error}"
    assert instance.outputs == {"result": 42, "echoed": 21}
    assert instance.variables == {"doubled": 42}
    assert instance.steps["double"].inputs == {"value": 21}
    assert calls == [("echo", {"value": 21}), ("double", 21)]
    assert instance.started_at is not None and instance.completed_at is not None


@pytest.mark.asyncio
async def test_independent_steps_run_concurrently(engine):
    definition = _workflow(
        """
        id: fan-out
        steps:
          - {id: a, type: task, executor: slow, inputBindings: {delay: 0.2}}
          - {id: b, type: task, executor: slow, inputBindings: {delay: 0.2}}
          - {id: c, type: task, executor: slow, inputBindings: {delay: 0.2}}
          - {id: join, type: task, executor: echo, dependsOn: [a, b, c]}
        """
    )
    loop = asyncio.get_running_loop()
    started = loop.time()
    instance = await engine.run(definition)
    elapsed = loop.time() - started

    assert instance.status == WorkflowStatus.COMPLETED
    assert elapsed < 0.5, f"Batch should run concurrently, took {elapsed:.2f}s"
    assert instance.steps["join"].started_at >= max(
        instance.steps[step_id].completed_at for step_id in ("a", "b", "c")
    )


@pytest.mark.asyncio
async def test_parallel_step_collects_child_outputs(engine):
    definition = _workflow(
        """
        id: parallel
        outputs:
          both: ${notify}
        steps:
          - id: notify
            type: parallel
            steps: [email, sms]
          - {id: email, type: task, executor: echo, inputBindings: {channel: email}}
          - {id: sms, type: task, executor: echo, inputBindings: {channel: sms}}
        """
    )
    instance = await engine.run(definition)

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.outputs["both"] == {
        "email": {"channel": "email"},
        "sms": {"channel": "sms"},
    }
    assert instance.steps["notify/email"].status == StepStatus.COMPLETED
    assert "email" not in instance.steps, "children are recorded under the parent key"


@pytest.mark.asyncio
async def test_for_each_loop_collects_outputs_in_order(engine):
    definition = _workflow(
        """
        id: loop
        inputs:
          values: {type: array, default: [1, 2, 3]}
        outputs:
          doubled: ${dbl_all}
        steps:
          - id: dbl_all
            type: loop
            forEach: ${inputs.values}
            do: dbl
          - id: dbl
            type: task
            executor: math
            action: double
            inputBindings:
              value: ${loop.item}
        """
    )
    instance = await engine.run(definition)

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.outputs == {"doubled": [2, 4, 6]}
    assert [instance.steps[f"dbl_all[{i}]/dbl"].outputs for i in range(3)] == [2, 4, 6]


@pytest.mark.asyncio
async def test_empty_for_each_completes_with_no_iterations(engine, calls):
    definition = _workflow(
        """
        id: loop
        steps:
          - {id: each, type: loop, forEach: "${inputs.values}", do: body}
          - {id: body, type: task, executor: echo}
        """
    )
    instance = await engine.run(definition, {"values": []})
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.steps["each"].outputs == []
    assert calls == []


@pytest.mark.asyncio
async def test_while_loop_sees_previous_outputs(engine):
    definition = _workflow(
        """
        id: countdown
        steps:
          - id: poll
            type: loop
            while: ${loop.index} < 3
            do: tick
          - id: tick
            type: task
            executor: echo
            inputBindings:
              index: ${loop.index}
              seen: ${loop.outputs}
        """
    )
    instance = await engine.run(definition)

    assert instance.status == WorkflowStatus.COMPLETED
    outputs = instance.steps["poll"].outputs
    assert [item["index"] for item in outputs] == [0, 1, 2]
    assert len(outputs[2]["seen"]) == 2


@pytest.mark.asyncio
async def test_conditional_runs_first_matching_branch(engine, calls):
    definition = _workflow(
        """
        id: route
        steps:
          - id: route
            type: conditional
            conditions:
              - {expression: "${inputs.amount} > 1000", then: manual}
              - {expression: "${inputs.amount} > 100", then: review}
            else: auto
          - {id: manual, type: task, executor: echo, inputBindings: {path: manual}}
          - {id: review, type: task, executor: echo, inputBindings: {path: review}}
          - {id: auto, type: task, executor: echo, inputBindings: {path: auto}}
        """
    )
    instance = await engine.run(definition, {"amount": 500})
    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.steps["route"].outputs == {"path": "review"}
    assert calls == [("echo", {"path": "review"})]

    calls.clear()
    instance = await engine.run(definition, {"amount": 5})
    assert instance.steps["route"].outputs == {"path": "auto"}


@pytest.mark.asyncio
async def test_conditional_without_match_completes_empty(engine, calls):
    definition = _workflow(
        """
        id: optional
        steps:
          - id: maybe
            type: conditional
            conditions:
              - {expression: "false", then: extra}
          - {id: extra, type: task, executor: echo}
          - {id: after, type: task, executor: echo, dependsOn: [maybe]}
        """
    )
    instance = await engine.run(definition)

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.steps["maybe"].status == StepStatus.COMPLETED
    assert instance.steps["maybe"].outputs == {}
    assert instance.steps["after"].status == StepStatus.COMPLETED
    assert calls == [("echo", {})]


@pytest.mark.asyncio
async def test_when_guard_skips_step_without_blocking_dependents(engine):
    definition = _workflow(
        """
        id: guarded
        steps:
          - {id: audit, type: task, executor: echo, when: "${inputs.audit}"}
          - {id: finish, type: task, executor: echo, dependsOn: [audit]}
        """
    )
    instance = await engine.run(definition, {"audit": False})

    assert instance.status == WorkflowStatus.COMPLETED
    assert instance.steps["audit"].status == StepStatus.SKIPPED
    assert instance.steps["audit"].skip_reason == "condition not met"
    assert instance.steps["finish"].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_inline_subworkflow_runs_as_child_instance(engine, store):
    definition = _workflow(
        """
        id: parent
        outputs:
          total: ${sub.result}
        steps:
          - id: sub
            type: subworkflow
            inputBindings:
              value: ${inputs.n}
            workflow:
              id: child
              inputs:
                value: {type: integer, required: true}
              outputs:
                result: ${dbl}
              steps:
                - id: dbl
                  type: task
                  executor: math
                  action: double
                  inputBindings:
                    value: ${inputs.value}
        """
    )
    instance = await engine.run(definition, {"n": 5})

    assert instance.status == WorkflowStatus.COMPLETED, f"Unexpected error: {instance.error}"
    assert instance.outputs == {"total": 10}

    children = [item for item in await store.list_instances() if item.parent_id == instance.id]
    assert len(children) == 1
    child = children[0]
    assert child.definition_id == "child"
    assert child.status == WorkflowStatus.COMPLETED
    assert set(child.steps) == {"dbl"}, "child steps live in their own namespace"


@pytest.mark.asyncio
async def test_subworkflow_by_reference(engine):
    child = _workflow(
        """
        id: greeter
        outputs:
          said: ${say.words}
        steps:
          - {id: say, type: task, executor: echo, inputBindings: {words: "${inputs.words}"}}
        """
    )
    engine.register_definition(child)
    parent = _workflow(
        """
        id: parent
        outputs:
          said: ${hello.said}
        steps:
          - id: hello
            type: subworkflow
            workflowRef: greeter
            inputBindings: {words: hi}
        """
    )
    instance = await engine.run(parent)
    assert instance.outputs == {"said": "hi"}


@pytest.mark.asyncio
async def test_report_summarises_execution(engine):
    definition = _workflow(
        """
        id: reported
        steps:
          - {id: a, type: task, executor: echo}
          - {id: b, type: task, executor: echo, dependsOn: [a]}
          - {id: c, type: task, executor: echo, when: "false"}
        """
    )
    instance = await engine.run(definition)
    report = await engine.report(instance.id)

    assert report.success
    assert report.definition_id == "reported"
    assert report.status_counts == {"completed": 2, "skipped": 1}
    assert report.total_attempts == 2
    assert report.duration is not None and report.duration >= 0
    assert [event.at for event in report.timeline] == sorted(
        event.at for event in report.timeline
    )
    assert {summary.step_id for summary in report.steps} == {"a", "b", "c"}
