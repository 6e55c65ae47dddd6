"""State store abstraction for workflow persistence."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol

from ..contracts import WorkflowDefinition
from .models import (
    CompensationRecord,
    InstanceUpdate,
    StepState,
    StepStatus,
    StepUpdate,
    WorkflowInstance,
    WorkflowStatus,
)


class StateStore(Protocol):
    """Protocol for workflow state persistence backends.

    Every transition is a compare-and-swap. A transition reports ``False``
    when the current status differs from the expected one, when the instance
    is unknown, and when the instance has already reached a terminal status.
    """

    async def create_instance(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, Any],
        *,
        instance_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        """Persist a new instance in ``created`` status and return its id."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Return a snapshot of the instance."""

    async def get_step(self, instance_id: str, step_id: str) -> StepState | None:
        """Return the recorded state of one step."""

    async def transition_step(
        self,
        instance_id: str,
        step_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        payload: Optional[StepUpdate] = None,
    ) -> bool:
        """Move a step between statuses; steps without a record are pending."""

    async def transition_instance(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkflowStatus],
        to_status: WorkflowStatus,
        payload: Optional[InstanceUpdate] = None,
    ) -> bool:
        """Move the instance between statuses."""

    async def append_variable(self, instance_id: str, key: str, value: Any) -> None:
        """Publish a value into the instance variable bag."""

    async def append_compensation(
        self, instance_id: str, record: CompensationRecord
    ) -> None:
        """Append to the compensation log."""

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        """Return all persisted instances, optionally filtered by status."""
