"""Static validation of workflow definitions and their inputs."""

from __future__ import annotations

import copy
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from .constants import RESERVED_STEP_IDS, SCOPE_SEPARATORS
from .contracts import (
    SCHEMA_TYPES,
    ConditionalStep,
    LoopStep,
    SubworkflowStep,
    WorkflowDefinition,
)
from .errors import CyclicDependencyError, ValidationError
from .expressions import check_predicate
from .resolver import find_cycle


class IssueKind(str, Enum):
    DUPLICATE_STEP = "duplicate_step"
    RESERVED_ID = "reserved_id"
    INVALID_ID = "invalid_id"
    UNKNOWN_DEPENDENCY = "unknown_dependency"
    SELF_DEPENDENCY = "self_dependency"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    UNKNOWN_REFERENCE = "unknown_reference"
    NESTED_DEPENDENCY = "nested_dependency"
    CONTAINMENT_CYCLE = "containment_cycle"
    INVALID_SCHEMA = "invalid_schema"
    INVALID_EXPRESSION = "invalid_expression"
    INVALID_SUBWORKFLOW = "invalid_subworkflow"
    EMPTY_WORKFLOW = "empty_workflow"


class ValidationIssue(BaseModel):
    """A single problem found in a definition."""

    kind: IssueKind
    step_id: Optional[str] = None
    message: str
    cycle: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of :func:`validate`. Callers must check ``ok``."""

    definition_id: str
    errors: list[ValidationIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """Raise ``CyclicDependencyError`` or ``ValidationError`` if not ``ok``."""
        if self.ok:
            return
        for issue in self.errors:
            if issue.kind in (IssueKind.CYCLIC_DEPENDENCY, IssueKind.SELF_DEPENDENCY):
                raise CyclicDependencyError(issue.cycle, self.errors)
        summary = "; ".join(issue.message for issue in self.errors)
        raise ValidationError(
            f"Workflow '{self.definition_id}' is invalid: {summary}", self.errors
        )


def matches_type(value: Any, type_name: str) -> bool:
    """Check ``value`` against a declared schema type."""
    if type_name == "any":
        return True
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "array":
        return isinstance(value, (list, tuple))
    if type_name == "object":
        return isinstance(value, Mapping)
    return False


def _schema_issues(definition: WorkflowDefinition) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for name, spec in definition.inputs.items():
        if spec.type not in SCHEMA_TYPES:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.INVALID_SCHEMA,
                    message=f"Input '{name}' has unknown type '{spec.type}'",
                )
            )
        elif spec.default is not None and not matches_type(spec.default, spec.type):
            issues.append(
                ValidationIssue(
                    kind=IssueKind.INVALID_SCHEMA,
                    message=f"Default of input '{name}' is not of type '{spec.type}'",
                )
            )
    for name, spec in definition.outputs.items():
        if spec.type not in SCHEMA_TYPES:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.INVALID_SCHEMA,
                    message=f"Output '{name}' has unknown type '{spec.type}'",
                )
            )
    return issues


def _containment_cycle(definition: WorkflowDefinition) -> Optional[list[str]]:
    children = {step.id: step.child_ids() for step in definition.steps}
    color = {step_id: 0 for step_id in children}
    stack: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        color[node] = 1
        stack.append(node)
        for child in children[node]:
            if child not in color or child == node:
                continue
            if color[child] == 1:
                return stack[stack.index(child):] + [child]
            if color[child] == 0:
                found = visit(child)
                if found:
                    return found
        stack.pop()
        color[node] = 2
        return None

    for step_id in children:
        if color[step_id] == 0:
            found = visit(step_id)
            if found:
                return found
    return None


def _expression_issues(step: Any) -> list[ValidationIssue]:
    expressions: list[tuple[str, Any]] = []
    if step.when is not None:
        expressions.append(("when", step.when))
    if isinstance(step, ConditionalStep):
        expressions.extend(("condition", branch.expression) for branch in step.conditions)
    if isinstance(step, LoopStep):
        if step.while_ is not None:
            expressions.append(("while", step.while_))
        elif isinstance(step.for_each, str) and "${" not in step.for_each:
            return [
                ValidationIssue(
                    kind=IssueKind.INVALID_EXPRESSION,
                    step_id=step.id,
                    message=f"Loop '{step.id}' forEach must be a list or a ${{...}} reference",
                )
            ]

    issues = []
    for label, expression in expressions:
        problem = check_predicate(expression)
        if problem:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.INVALID_EXPRESSION,
                    step_id=step.id,
                    message=f"Step '{step.id}' has invalid {label} expression: {problem}",
                )
            )
    return issues


def validate(
    definition: WorkflowDefinition, known_workflows: Optional[Iterable[str]] = None
) -> ValidationResult:
    """Check a definition for structural and semantic problems.

    Args:
        definition: The workflow to check.
        known_workflows: Ids that ``workflowRef`` may point to. When ``None``
            references are not checked.

    Returns:
        A result listing every problem found; nothing is raised.
    """
    known = set(known_workflows) if known_workflows is not None else None
    issues: list[ValidationIssue] = []

    if not definition.steps:
        issues.append(
            ValidationIssue(
                kind=IssueKind.EMPTY_WORKFLOW,
                message=f"Workflow '{definition.id}' has no steps",
            )
        )

    seen: set[str] = set()
    for step in definition.steps:
        if step.id in seen:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.DUPLICATE_STEP,
                    step_id=step.id,
                    message=f"Step id '{step.id}' is declared more than once",
                )
            )
        seen.add(step.id)
        if step.id in RESERVED_STEP_IDS:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.RESERVED_ID,
                    step_id=step.id,
                    message=f"Step id '{step.id}' is reserved",
                )
            )
        if any(char in step.id for char in SCOPE_SEPARATORS):
            issues.append(
                ValidationIssue(
                    kind=IssueKind.INVALID_ID,
                    step_id=step.id,
                    message=f"Step id '{step.id}' may not contain '/', '[' or ']'",
                )
            )

    nested = definition.nested_step_ids() & seen
    for step in definition.steps:
        for dep in step.depends_on:
            if dep == step.id:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.SELF_DEPENDENCY,
                        step_id=step.id,
                        message=f"Step '{step.id}' depends on itself",
                        cycle=[step.id, step.id],
                    )
                )
            elif dep not in seen:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.UNKNOWN_DEPENDENCY,
                        step_id=step.id,
                        message=f"Step '{step.id}' depends on undefined step '{dep}'",
                    )
                )
            elif dep in nested:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.NESTED_DEPENDENCY,
                        step_id=step.id,
                        message=f"Step '{step.id}' depends on nested step '{dep}'",
                    )
                )
        if step.id in nested and step.depends_on:
            issues.append(
                ValidationIssue(
                    kind=IssueKind.NESTED_DEPENDENCY,
                    step_id=step.id,
                    message=f"Nested step '{step.id}' must not declare dependsOn",
                )
            )

        references = list(step.child_ids())
        if step.compensation:
            references.append(step.compensation)
        for ref in references:
            if ref not in seen:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.UNKNOWN_REFERENCE,
                        step_id=step.id,
                        message=f"Step '{step.id}' references undefined step '{ref}'",
                    )
                )
            elif ref == step.id:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.CONTAINMENT_CYCLE,
                        step_id=step.id,
                        message=f"Step '{step.id}' references itself",
                    )
                )

        issues.extend(_expression_issues(step))

        if isinstance(step, SubworkflowStep):
            if step.workflow is not None:
                for issue in validate(step.workflow, known).errors:
                    issues.append(
                        ValidationIssue(
                            kind=IssueKind.INVALID_SUBWORKFLOW,
                            step_id=step.id,
                            message=f"Subworkflow '{step.id}': {issue.message}",
                        )
                    )
            elif known is not None and step.workflow_ref not in known:
                issues.append(
                    ValidationIssue(
                        kind=IssueKind.INVALID_SUBWORKFLOW,
                        step_id=step.id,
                        message=f"Subworkflow '{step.id}' references unknown workflow '{step.workflow_ref}'",
                    )
                )

    containment = _containment_cycle(definition)
    if containment:
        issues.append(
            ValidationIssue(
                kind=IssueKind.CONTAINMENT_CYCLE,
                step_id=containment[0],
                message=f"Steps contain each other: {' -> '.join(containment)}",
            )
        )

    cycle = find_cycle(
        [step for step in definition.steps if step.id not in step.depends_on]
    )
    if cycle:
        issues.append(
            ValidationIssue(
                kind=IssueKind.CYCLIC_DEPENDENCY,
                step_id=cycle[0],
                message=f"Cyclic dependency: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        )

    issues.extend(_schema_issues(definition))
    return ValidationResult(definition_id=definition.id, errors=issues)


def validate_inputs(
    definition: WorkflowDefinition, inputs: Optional[Mapping[str, Any]] = None
) -> dict[str, Any]:
    """Apply defaults and check ``inputs`` against the declared schema.

    Undeclared inputs are passed through unchanged.

    Raises:
        ValidationError: A required input is missing or a value has the wrong type.
    """
    provided = dict(inputs or {})
    resolved: dict[str, Any] = {}
    problems: list[str] = []

    for name, spec in definition.inputs.items():
        if name in provided:
            value = provided[name]
        elif spec.default is not None:
            value = copy.deepcopy(spec.default)
        elif spec.required:
            problems.append(f"missing required input '{name}'")
            continue
        else:
            value = None
        if value is not None and not matches_type(value, spec.type):
            problems.append(f"input '{name}' must be of type '{spec.type}'")
        resolved[name] = value

    for name, value in provided.items():
        resolved.setdefault(name, value)

    if problems:
        raise ValidationError(
            f"Invalid inputs for workflow '{definition.id}': {'; '.join(problems)}"
        )
    return resolved
