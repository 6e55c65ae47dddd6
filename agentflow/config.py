from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_LOOP_ITERATIONS,
    DEFAULT_POLL_INTERVAL,
)


class EngineConfig(BaseModel):
    """Tuning knobs for the workflow engine."""

    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    default_step_timeout: Optional[float] = None
    max_backoff: float = DEFAULT_MAX_BACKOFF
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES
    poll_interval: float = DEFAULT_POLL_INTERVAL


class HttpExecutorConfig(BaseModel):
    """Configuration for the HTTP task executor."""

    base_url: str = "http://localhost:8080"
    timeout: float = 30.0
    headers: Dict[str, str] = Field(default_factory=dict)


class ExecutorConfig(BaseModel):
    """Task executor configuration settings."""

    backend: Literal["local", "http", "agent"] = "local"
    http: HttpExecutorConfig = HttpExecutorConfig()


class AgentflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    executor: ExecutorConfig = ExecutorConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> AgentflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AGENTFLOW_CONFIG env
            variable or 'agentflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("AGENTFLOW_CONFIG", "agentflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AgentflowConfig(**data)
    else:
        config = AgentflowConfig()

    env_db_url = os.getenv("AGENTFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
