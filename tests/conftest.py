import asyncio

import pytest

from agentflow.config import AgentflowConfig, EngineConfig
from agentflow.engine import WorkflowEngine
from agentflow.executors import LocalTaskExecutor
from agentflow.persistence import InMemoryStateStore


@pytest.fixture
def config() -> AgentflowConfig:
    return AgentflowConfig(engine=EngineConfig(poll_interval=0.01))


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def executor(calls) -> LocalTaskExecutor:
    """Local executor with a handful of recording capabilities."""
    executor = LocalTaskExecutor()

    @executor.capability("echo")
    async def echo(**kwargs):
        calls.append(("echo", kwargs))
        return kwargs

    @executor.capability("math", action="double")
    def double(value):
        calls.append(("double", value))
        return value * 2

    @executor.capability("boom")
    async def boom(**kwargs):
        calls.append(("boom", kwargs))
        raise RuntimeError("boom")

    @executor.capability("slow")
    async def slow(delay=1.0, **kwargs):
        calls.append(("slow", delay))
        await asyncio.sleep(delay)
        return {"slept": delay}

    @executor.capability("undo")
    async def undo(step=None, outputs=None):
        calls.append(("undo", step))
        return {"undone": step}

    return executor


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def engine(executor, store, config) -> WorkflowEngine:
    return WorkflowEngine(executor, store=store, config=config)
