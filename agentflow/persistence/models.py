"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import WorkflowDefinition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Lifecycle states of a workflow instance."""

    CREATED = "created"
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPENSATED = "compensated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_WORKFLOW_STATUSES


TERMINAL_WORKFLOW_STATUSES = frozenset(
    {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.COMPENSATED,
    }
)


class StepStatus(str, Enum):
    """Lifecycle states of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    COMPENSATED = "compensated"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class StepErrorInfo(BaseModel):
    """Failure recorded on a step."""

    error_type: str
    message: str
    attempt: int = 0

    @classmethod
    def from_exception(cls, exc: BaseException, attempt: int = 0) -> "StepErrorInfo":
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        return cls(error_type=type(exc).__name__, message=message, attempt=attempt)


class WorkflowErrorInfo(BaseModel):
    """Failure recorded on an instance; names the step that caused it."""

    step_id: Optional[str] = None
    attempt: int = 0
    error_type: str
    message: str


class StepState(BaseModel):
    """Runtime record of one step (or one scoped nested execution)."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    inputs: Optional[dict[str, Any]] = None
    outputs: Any = None
    retry_count: int = 0
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[StepErrorInfo] = None
    completion_seq: Optional[int] = None
    skip_reason: Optional[str] = None
    tolerated: bool = False

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class StepUpdate(BaseModel):
    """Fields written together with a step transition.

    Only fields that were explicitly set are applied, so ``error=None``
    clears a previous error while an omitted ``error`` keeps it.
    """

    inputs: Optional[dict[str, Any]] = None
    outputs: Any = None
    error: Optional[StepErrorInfo] = None
    retry_count: Optional[int] = None
    attempts: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    tolerated: Optional[bool] = None


class InstanceUpdate(BaseModel):
    """Fields written together with an instance transition."""

    outputs: Optional[dict[str, Any]] = None
    error: Optional[WorkflowErrorInfo] = None


class CompensationRecord(BaseModel):
    """Outcome of one compensating action."""

    step_id: str
    compensation_step_id: str
    succeeded: bool
    error: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str
    definition: WorkflowDefinition
    inputs: dict[str, Any] = Field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.CREATED
    steps: dict[str, StepState] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: Optional[WorkflowErrorInfo] = None
    compensation_log: list[CompensationRecord] = Field(default_factory=list)
    parent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def definition_id(self) -> str:
        return self.definition.id

    @property
    def version(self) -> str:
        return self.definition.version

    def step_state(self, step_id: str) -> StepState:
        """Return the recorded state, or a Pending state if none exists yet."""
        return self.steps.get(step_id) or StepState(step_id=step_id)


def apply_step_transition(
    state: StepState,
    to_status: StepStatus,
    payload: Optional[StepUpdate] = None,
    completion_seq: Optional[int] = None,
) -> StepState:
    """Return ``state`` moved to ``to_status`` with ``payload`` applied."""
    update: dict[str, Any] = {"status": to_status}
    if payload is not None:
        update.update(
            {name: getattr(payload, name) for name in payload.model_fields_set}
        )
    if to_status == StepStatus.RUNNING and "started_at" not in update:
        update["started_at"] = utcnow()
    if to_status.is_terminal and to_status != StepStatus.COMPENSATED:
        update.setdefault("completed_at", utcnow())
    if to_status == StepStatus.COMPLETED:
        update["completion_seq"] = completion_seq
    return state.model_copy(update=update)


def apply_instance_transition(
    instance: WorkflowInstance,
    to_status: WorkflowStatus,
    payload: Optional[InstanceUpdate] = None,
) -> dict[str, Any]:
    """Compute the instance fields changed by a transition to ``to_status``."""
    update: dict[str, Any] = {"status": to_status}
    if payload is not None:
        update.update(
            {name: getattr(payload, name) for name in payload.model_fields_set}
        )
    if to_status == WorkflowStatus.RUNNING and instance.started_at is None:
        update["started_at"] = utcnow()
    if to_status.is_terminal:
        update["completed_at"] = utcnow()
    return update
