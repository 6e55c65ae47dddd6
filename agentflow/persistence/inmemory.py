"""In-memory implementation of the state store."""

from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from typing import Any, Dict, Iterable, Optional

from ..contracts import WorkflowDefinition
from .models import (
    CompensationRecord,
    InstanceUpdate,
    StepState,
    StepStatus,
    StepUpdate,
    WorkflowInstance,
    WorkflowStatus,
    apply_instance_transition,
    apply_step_transition,
)
from .store import StateStore


class InMemoryStateStore(StateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Readers always receive copies.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = asyncio.Lock()
        self._completion_seq = itertools.count(1)

    # ------------------------------------------------------------------
    async def create_instance(
        self,
        definition: WorkflowDefinition,
        inputs: dict[str, Any],
        *,
        instance_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        instance_id = instance_id or str(uuid.uuid4())
        async with self._lock:
            if instance_id in self._instances:
                raise ValueError(f"Instance {instance_id} already exists")
            self._instances[instance_id] = WorkflowInstance(
                id=instance_id,
                definition=definition,
                inputs=copy.deepcopy(inputs),
                parent_id=parent_id,
                steps={
                    step.id: StepState(step_id=step.id)
                    for step in definition.top_level_steps()
                },
            )
        return instance_id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance else None

    async def get_step(self, instance_id: str, step_id: str) -> StepState | None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if not instance or step_id not in instance.steps:
                return None
            return instance.steps[step_id].model_copy(deep=True)

    async def transition_step(
        self,
        instance_id: str,
        step_id: str,
        from_status: StepStatus,
        to_status: StepStatus,
        payload: Optional[StepUpdate] = None,
    ) -> bool:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if not instance or instance.status.is_terminal:
                return False
            current = instance.step_state(step_id)
            if current.status != from_status:
                return False
            seq = next(self._completion_seq) if to_status == StepStatus.COMPLETED else None
            instance.steps[step_id] = apply_step_transition(
                current, to_status, copy.deepcopy(payload), seq
            )
            return True

    async def transition_instance(
        self,
        instance_id: str,
        from_statuses: Iterable[WorkflowStatus],
        to_status: WorkflowStatus,
        payload: Optional[InstanceUpdate] = None,
    ) -> bool:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if not instance or instance.status.is_terminal:
                return False
            if instance.status not in set(from_statuses):
                return False
            update = apply_instance_transition(instance, to_status, copy.deepcopy(payload))
            self._instances[instance_id] = instance.model_copy(update=update)
            return True

    async def append_variable(self, instance_id: str, key: str, value: Any) -> None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance:
                instance.variables[key] = copy.deepcopy(value)

    async def append_compensation(
        self, instance_id: str, record: CompensationRecord
    ) -> None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance:
                instance.compensation_log.append(record.model_copy())

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        async with self._lock:
            return [
                copy.deepcopy(instance)
                for instance in self._instances.values()
                if status is None or instance.status == status
            ]
