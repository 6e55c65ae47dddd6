"""Workflow definition contracts for agentflow.

A :class:`WorkflowDefinition` is an immutable template: an id, a version,
the declared input/output schema, a default error-handling policy and the
list of steps. Steps are a tagged union discriminated on ``type``.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_BACKOFF_BASE

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> Any:
    """Convert ``"100ms"``, ``"2s"``, ``"5m"`` or a number into seconds."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        return float(amount) * _DURATION_UNITS[unit]
    return value


Duration = Annotated[float, BeforeValidator(parse_duration)]


class StepKind(str, Enum):
    """Kinds of steps a workflow can contain."""

    TASK = "task"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    SUBWORKFLOW = "subworkflow"


class ErrorStrategy(str, Enum):
    """How a step failure affects the rest of the workflow."""

    FAIL_FAST = "fail_fast"
    RETRY_THEN_FAIL = "retry_then_fail"
    RETRY_THEN_CONTINUE = "retry_then_continue"
    CONTINUE = "continue"
    COMPENSATE = "compensate"

    @classmethod
    def parse(cls, value: Any) -> Any:
        """Accept ``FailFast``, ``fail_fast``, ``fail-fast`` and ``FAIL_FAST``."""
        if isinstance(value, cls) or not isinstance(value, str):
            return value
        text = value.strip().replace("-", "_")
        if not text.isupper():
            text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", text)
        return cls(text.lower())

    @property
    def retries(self) -> bool:
        return self in (
            ErrorStrategy.RETRY_THEN_FAIL,
            ErrorStrategy.RETRY_THEN_CONTINUE,
            ErrorStrategy.COMPENSATE,
        )


SCHEMA_TYPES = frozenset(
    {"string", "integer", "number", "boolean", "array", "object", "any"}
)


Strategy = Annotated[ErrorStrategy, BeforeValidator(ErrorStrategy.parse)]


class _Contract(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="forbid",
    )


class BackoffPolicy(_Contract):
    """Delay between retry attempts: ``base * 2**retry`` capped at ``max``."""

    type: Literal["exponential", "fixed"] = "exponential"
    base: Duration = DEFAULT_BACKOFF_BASE
    max_delay: Optional[Duration] = Field(default=None, alias="max")


class ErrorHandling(_Contract):
    """Workflow-wide default error policy."""

    strategy: Strategy = ErrorStrategy.FAIL_FAST
    max_retries: int = Field(default=0, ge=0)
    backoff: BackoffPolicy = BackoffPolicy()


class RetryPolicy(_Contract):
    """Per-step override of the workflow error policy."""

    strategy: Optional[Strategy] = None
    max_retries: Optional[int] = Field(default=None, ge=0)
    backoff: Optional[BackoffPolicy] = None


class InputSpec(_Contract):
    """Declared workflow input."""

    type: str = "any"
    required: bool = False
    default: Any = None
    description: Optional[str] = None


class OutputSpec(_Contract):
    """Declared workflow output resolved from the variable bag."""

    value: Any = None
    type: str = "any"
    description: Optional[str] = None


class InputBinding(_Contract):
    """Named value passed to a task; ``${...}`` references are resolved."""

    name: str
    value: Any = None


def _bindings_from_mapping(value: Any) -> Any:
    if isinstance(value, dict):
        return [{"name": key, "value": item} for key, item in value.items()]
    return value


Bindings = Annotated[tuple[InputBinding, ...], BeforeValidator(_bindings_from_mapping)]


class BaseStep(_Contract):
    """Fields shared by every step kind."""

    id: str = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    depends_on: tuple[str, ...] = ()
    timeout: Optional[Duration] = None
    retry_policy: Optional[RetryPolicy] = None
    compensation: Optional[str] = None
    when: Any = None
    output_var: Optional[str] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    @property
    def kind(self) -> StepKind:
        return StepKind(self.type)  # type: ignore[attr-defined]

    def child_ids(self) -> list[str]:
        """Ids of steps this step runs itself (children, branches, body)."""
        return []


class TaskStep(BaseStep):
    """Unit of work delegated to an external executor."""

    type: Literal["task"] = "task"
    executor: str
    action: Optional[str] = None
    input_bindings: Bindings = ()


class ParallelStep(BaseStep):
    """Runs a group of child steps concurrently."""

    type: Literal["parallel"] = "parallel"
    steps: tuple[str, ...]
    continue_on_partial_failure: bool = False

    def child_ids(self) -> list[str]:
        return list(self.steps)


class ConditionBranch(_Contract):
    expression: Any
    then: str


class ConditionalStep(BaseStep):
    """Runs the first branch whose predicate holds, else the ``else`` branch."""

    type: Literal["conditional"] = "conditional"
    conditions: tuple[ConditionBranch, ...] = ()
    else_: Optional[str] = Field(default=None, alias="else")

    def child_ids(self) -> list[str]:
        ids = [branch.then for branch in self.conditions]
        if self.else_:
            ids.append(self.else_)
        return ids


class LoopStep(BaseStep):
    """Runs a body step per element of a source, or while a predicate holds."""

    type: Literal["loop"] = "loop"
    for_each: Any = Field(default=None, alias="forEach")
    while_: Any = Field(default=None, alias="while")
    do: str
    max_iterations: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_source(self) -> "LoopStep":
        if (self.for_each is None) == (self.while_ is None):
            raise ValueError(f"Loop '{self.id}' needs exactly one of forEach or while")
        return self

    @property
    def is_enumerating(self) -> bool:
        return self.for_each is not None

    def child_ids(self) -> list[str]:
        return [self.do]


class SubworkflowStep(BaseStep):
    """Runs a nested workflow definition as a child instance."""

    type: Literal["subworkflow"] = "subworkflow"
    workflow: Optional[WorkflowDefinition] = None
    workflow_ref: Optional[str] = None
    input_bindings: Bindings = ()

    @model_validator(mode="after")
    def _one_workflow(self) -> "SubworkflowStep":
        if (self.workflow is None) == (self.workflow_ref is None):
            raise ValueError(
                f"Subworkflow '{self.id}' needs exactly one of workflow or workflowRef"
            )
        return self


StepDefinition = Annotated[
    Union[TaskStep, ParallelStep, ConditionalStep, LoopStep, SubworkflowStep],
    Field(discriminator="type"),
]


class WorkflowDefinition(_Contract):
    """Immutable workflow template."""

    id: str = Field(min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    version: str = "1"
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)
    error_handling: ErrorHandling = ErrorHandling()
    timeout: Optional[Duration] = None
    steps: tuple[StepDefinition, ...] = ()

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("inputs", mode="before")
    @classmethod
    def _expand_input_shorthand(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: {"type": spec} if isinstance(spec, str) else spec
                for key, spec in value.items()
            }
        return value

    @field_validator("outputs", mode="before")
    @classmethod
    def _expand_output_shorthand(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: spec if isinstance(spec, dict) else {"value": spec}
                for key, spec in value.items()
            }
        return value

    def get_step(self, step_id: str) -> BaseStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)

    def nested_step_ids(self) -> set[str]:
        """Steps that only run through an owner (child, branch, body, compensation)."""
        nested: set[str] = set()
        for step in self.steps:
            nested.update(step.child_ids())
            if step.compensation:
                nested.add(step.compensation)
        return nested

    def top_level_steps(self) -> list[BaseStep]:
        nested = self.nested_step_ids()
        return [step for step in self.steps if step.id not in nested]


SubworkflowStep.model_rebuild()
WorkflowDefinition.model_rebuild()
