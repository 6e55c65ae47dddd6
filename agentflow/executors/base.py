"""Task executor abstraction used by the workflow engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel

from ..utils.cancellation import CancellationToken


class CapabilitySelector(BaseModel):
    """Identifies which capability should run a task."""

    executor: str
    action: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.executor}.{self.action}" if self.action else self.executor


class TaskResult(BaseModel):
    """Outcome of a single task assignment."""

    success: bool
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Any = None) -> "TaskResult":
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: str) -> "TaskResult":
        return cls(success=False, error=error)


class TaskExecutor(ABC):
    """Runs task steps on behalf of the engine.

    Implementations report task-level failures through
    ``TaskResult(success=False)``; raised exceptions are treated the same
    way by the engine.
    """

    @abstractmethod
    async def assign_task(
        self,
        selector: CapabilitySelector,
        input: dict[str, Any],
        timeout: Optional[float],
        cancellation: Optional[CancellationToken] = None,
    ) -> TaskResult:
        """Run one task and return its result."""

    async def aclose(self) -> None:
        """Release resources held by the executor."""
