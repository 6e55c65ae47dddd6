"""Exception hierarchy for agentflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .validation import ValidationIssue


class AgentflowError(Exception):
    """Base class for all agentflow errors."""


class ValidationError(AgentflowError):
    """A workflow definition or its inputs are malformed."""

    def __init__(
        self, message: str, issues: Optional[Iterable["ValidationIssue"]] = None
    ) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class CyclicDependencyError(ValidationError):
    """The dependency graph of a definition contains a cycle."""

    def __init__(
        self, cycle: list[str], issues: Optional[Iterable["ValidationIssue"]] = None
    ) -> None:
        self.cycle = list(cycle)
        super().__init__(
            f"Cyclic dependency between steps: {' -> '.join(self.cycle)}", issues
        )


class StepExecutionError(AgentflowError):
    """A step failed while executing."""

    def __init__(
        self, message: str, step_id: Optional[str] = None, attempt: int = 0
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.attempt = attempt

    def __str__(self) -> str:
        if self.step_id:
            return f"Step '{self.step_id}' failed (attempt {self.attempt}): {self.message}"
        return self.message


class StepTimeoutError(StepExecutionError, TimeoutError):
    """A step exceeded its allotted time."""


class ExpressionError(StepExecutionError):
    """A binding or predicate could not be evaluated."""


class WorkflowTimeoutError(AgentflowError, TimeoutError):
    """A workflow instance exceeded its global timeout."""


class LoopLimitExceededError(AgentflowError):
    """A condition loop ran past its iteration cap."""

    def __init__(self, step_id: str, limit: int) -> None:
        super().__init__(f"Loop '{step_id}' exceeded {limit} iterations")
        self.step_id = step_id
        self.limit = limit


class ConcurrencyConflictError(AgentflowError):
    """A compare-and-swap transition lost a race in the state store."""

    def __init__(self, instance_id: str, step_id: str, expected: str, actual: str | None):
        super().__init__(
            f"Conflict on {instance_id}/{step_id}: expected {expected}, found {actual}"
        )
        self.instance_id = instance_id
        self.step_id = step_id
        self.expected = expected
        self.actual = actual


class CompensationError(AgentflowError):
    """A compensating action failed. Logged and recorded, never raised to callers."""

    def __init__(self, step_id: str, compensation_step_id: str, message: str) -> None:
        super().__init__(
            f"Compensation '{compensation_step_id}' for step '{step_id}' failed: {message}"
        )
        self.step_id = step_id
        self.compensation_step_id = compensation_step_id


FATAL_ERRORS: tuple[type[BaseException], ...] = (
    LoopLimitExceededError,
    ValidationError,
    WorkflowTimeoutError,
)
