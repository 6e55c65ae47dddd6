"""agentflow: Durable workflow orchestration for agents and services."""

from .config import AgentflowConfig, load_config
from .contracts import ErrorStrategy, StepKind, WorkflowDefinition
from .engine import WorkflowEngine
from .errors import (
    AgentflowError,
    CyclicDependencyError,
    StepExecutionError,
    ValidationError,
)
from .executors import LocalTaskExecutor, TaskResult, get_executor
from .loader import load_definition
from .persistence import WorkflowStatus, get_state_store
from .resolver import build_execution_plan
from .validation import validate

__version__ = "0.1.0"
__all__ = [
    "AgentflowConfig",
    "AgentflowError",
    "CyclicDependencyError",
    "ErrorStrategy",
    "LocalTaskExecutor",
    "StepExecutionError",
    "StepKind",
    "TaskResult",
    "ValidationError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowStatus",
    "build_execution_plan",
    "get_executor",
    "get_state_store",
    "load_config",
    "load_definition",
    "validate",
]
