"""Task executor backends."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentflowConfig, load_config
from .base import CapabilitySelector, TaskExecutor, TaskResult
from .http import HttpTaskExecutor
from .local import LocalTaskExecutor

try:  # pragma: no cover - optional dependency
    from .agent import AgentTaskExecutor
except ImportError:  # pragma: no cover - optional dependency
    AgentTaskExecutor = None  # type: ignore


def get_executor(
    backend: Optional[str] = None, config: Optional[AgentflowConfig] = None
) -> TaskExecutor:
    """Factory function to obtain a task executor.

    The backend is chosen from ``backend``, the ``AGENTFLOW_EXECUTOR``
    environment variable or the loaded configuration, in that order.
    """

    config = config or load_config()
    backend = backend or os.getenv("AGENTFLOW_EXECUTOR") or config.executor.backend

    if backend == "local":
        return LocalTaskExecutor()
    if backend == "http":
        http = config.executor.http
        return HttpTaskExecutor(
            base_url=http.base_url, timeout=http.timeout, headers=http.headers
        )
    if backend == "agent":
        if AgentTaskExecutor is None:
            raise RuntimeError("pydantic-ai support not available")
        return AgentTaskExecutor()
    raise ValueError(f"Unsupported executor backend: {backend}")


__all__ = [
    "AgentTaskExecutor",
    "CapabilitySelector",
    "HttpTaskExecutor",
    "LocalTaskExecutor",
    "TaskExecutor",
    "TaskResult",
    "get_executor",
]
