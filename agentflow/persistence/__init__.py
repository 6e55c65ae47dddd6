"""Persistence layer for agentflow workflow state."""

from __future__ import annotations

from typing import Optional

from ..config import AgentflowConfig, load_config
from .inmemory import InMemoryStateStore
from .models import (
    CompensationRecord,
    InstanceUpdate,
    StepErrorInfo,
    StepState,
    StepStatus,
    StepUpdate,
    WorkflowErrorInfo,
    WorkflowInstance,
    WorkflowStatus,
)
from .sqlite import SQLiteStateStore
from .store import StateStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresStateStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresStateStore = None  # type: ignore


def get_state_store(
    database_url: Optional[str] = None, config: Optional[AgentflowConfig] = None
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly or through the loaded configuration (which itself honours
    ``AGENTFLOW_DATABASE_URL`` and ``DATABASE_URL``). When no database is
    configured, an in-memory store is returned.
    """

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        return InMemoryStateStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteStateStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresStateStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresStateStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "CompensationRecord",
    "InMemoryStateStore",
    "InstanceUpdate",
    "PostgresStateStore",
    "SQLiteStateStore",
    "StateStore",
    "StepErrorInfo",
    "StepState",
    "StepStatus",
    "StepUpdate",
    "WorkflowErrorInfo",
    "WorkflowInstance",
    "WorkflowStatus",
    "get_state_store",
]
