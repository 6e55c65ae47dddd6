import pytest
from pydantic import ValidationError as PydanticValidationError

from agentflow.contracts import (
    ErrorStrategy,
    LoopStep,
    ParallelStep,
    StepKind,
    TaskStep,
    WorkflowDefinition,
    parse_duration,
)
from agentflow.errors import ValidationError
from agentflow.loader import dump_definition, load_definition

ORDER_YAML = """
id: order
version: 2
inputs:
  order_id: integer
  priority:
    type: string
    default: normal
outputs:
  shipped: ${ship.tracking}
errorHandling:
  strategy: RetryThenFail
  maxRetries: 2
  backoff:
    type: exponential
    base: 100ms
    max: 2s
timeout: 5m
steps:
  - id: reserve
    type: task
    executor: inventory
    action: reserve
    inputBindings:
      order: ${inputs.order_id}
  - id: notify
    type: parallel
    steps: [email, sms]
    dependsOn: reserve
  - id: email
    type: task
    executor: email
  - id: sms
    type: task
    executor: sms
  - id: ship
    type: task
    executor: shipping
    dependsOn: [notify]
    timeout: 30s
    compensation: unship
  - id: unship
    type: task
    executor: shipping
    action: cancel
"""


def test_parse_duration_units():
    assert parse_duration("100ms") == pytest.approx(0.1)
    assert parse_duration("2s") == 2.0
    assert parse_duration("5m") == 300.0
    assert parse_duration("1h") == 3600.0
    assert parse_duration(3) == 3.0
    with pytest.raises(ValueError):
        parse_duration("soon")


@pytest.mark.parametrize(
    "text", ["FailFast", "fail_fast", "fail-fast", "FAIL_FAST"]
)
def test_error_strategy_accepts_spellings(text):
    assert ErrorStrategy.parse(text) == ErrorStrategy.FAIL_FAST


def test_load_definition_from_yaml_document():
    definition = load_definition(ORDER_YAML)

    assert definition.id == "order"
    assert definition.version == "2", "numeric versions are kept as strings"
    assert definition.inputs["order_id"].type == "integer"
    assert definition.inputs["priority"].default == "normal"
    assert definition.outputs["shipped"].value == "${ship.tracking}"
    assert definition.error_handling.strategy == ErrorStrategy.RETRY_THEN_FAIL
    assert definition.error_handling.backoff.base == pytest.approx(0.1)
    assert definition.error_handling.backoff.max_delay == 2.0
    assert definition.timeout == 300.0

    reserve = definition.get_step("reserve")
    assert isinstance(reserve, TaskStep)
    assert reserve.kind == StepKind.TASK
    assert reserve.input_bindings[0].name == "order"
    notify = definition.get_step("notify")
    assert isinstance(notify, ParallelStep)
    assert notify.depends_on == ("reserve",)
    assert definition.get_step("ship").timeout == 30.0


def test_top_level_steps_exclude_nested_and_compensation_steps():
    definition = load_definition(ORDER_YAML)
    top_level = [step.id for step in definition.top_level_steps()]
    assert top_level == ["reserve", "notify", "ship"]


def test_load_definition_from_file(tmp_path):
    path = tmp_path / "order.yaml"
    path.write_text(ORDER_YAML)
    assert load_definition(path).id == "order"
    assert load_definition(str(path)).id == "order"


def test_load_definition_missing_file(tmp_path):
    with pytest.raises(ValidationError, match="not found"):
        load_definition(tmp_path / "missing.yaml")


def test_load_definition_reports_schema_errors():
    with pytest.raises(ValidationError, match="Invalid workflow definition"):
        load_definition({"id": "x", "steps": [{"id": "a", "type": "task"}]})
    with pytest.raises(ValidationError, match="must be a mapping"):
        load_definition("- just\n- a list\n")


def test_loop_requires_exactly_one_source():
    with pytest.raises(ValidationError, match="exactly one of forEach or while"):
        load_definition(
            {
                "id": "x",
                "steps": [
                    {"id": "l", "type": "loop", "do": "b", "forEach": [1], "while": "true"},
                    {"id": "b", "type": "task", "executor": "e"},
                ],
            }
        )


def test_subworkflow_requires_exactly_one_workflow():
    with pytest.raises(ValidationError, match="exactly one of workflow or workflowRef"):
        load_definition({"id": "x", "steps": [{"id": "s", "type": "subworkflow"}]})


def test_dump_definition_round_trips_aliases():
    definition = load_definition(ORDER_YAML)
    document = dump_definition(definition)
    assert document["errorHandling"]["maxRetries"] == 2
    assert list(document["steps"][1]["dependsOn"]) == ["reserve"]
    assert load_definition(document) == definition


def test_definitions_are_immutable():
    definition = WorkflowDefinition(id="x", steps=[TaskStep(id="a", executor="e")])
    with pytest.raises(PydanticValidationError):
        definition.id = "y"


def test_loop_step_reports_source_kind():
    step = LoopStep(id="l", do="b", for_each="${inputs.items}")
    assert step.is_enumerating
    assert step.child_ids() == ["b"]
