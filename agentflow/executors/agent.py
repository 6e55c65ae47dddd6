"""Task executor that hands tasks to pydantic-ai agents."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from pydantic_ai import Agent

from ..utils.cancellation import CancellationToken
from .base import CapabilitySelector, TaskExecutor, TaskResult

logger = logging.getLogger(__name__)


class AgentTaskExecutor(TaskExecutor):
    """Run each task as a single agent run.

    Agents are registered per executor name. The ``prompt`` input becomes
    the user prompt; without one the whole input is rendered as JSON. An
    optional ``deps`` input is passed through as the run dependencies.
    """

    def __init__(self, agents: Optional[Dict[str, Agent]] = None) -> None:
        self._agents: Dict[str, Agent] = dict(agents or {})

    def register(self, executor: str, agent: Agent) -> None:
        self._agents[executor] = agent

    @staticmethod
    def build_prompt(selector: CapabilitySelector, input: dict[str, Any]) -> str:
        payload = dict(input)
        payload.pop("deps", None)
        prompt = payload.pop("prompt", None)
        if prompt is None:
            prompt = json.dumps(payload, default=str)
        elif payload:
            prompt = f"{prompt}\n\nContext:\n{json.dumps(payload, default=str)}"
        if selector.action:
            prompt = f"Action: {selector.action}\n{prompt}"
        return prompt

    async def assign_task(
        self,
        selector: CapabilitySelector,
        input: dict[str, Any],
        timeout: Optional[float],
        cancellation: Optional[CancellationToken] = None,
    ) -> TaskResult:
        agent = self._agents.get(selector.executor)
        if agent is None:
            return TaskResult.failed(f"No agent registered for '{selector.executor}'")
        if cancellation is not None and cancellation.cancelled:
            return TaskResult.failed("Task cancelled before start")

        prompt = self.build_prompt(selector, input)
        logger.debug(f"Running agent {selector.executor} with prompt: {prompt}")
        try:
            result = await agent.run(prompt, deps=input.get("deps"))
        except Exception as exc:
            logger.warning(f"Agent {selector.executor} failed: {exc}")
            return TaskResult.failed(str(exc) or type(exc).__name__)

        output = result.output
        if hasattr(output, "model_dump"):
            output = output.model_dump()
        logger.info(f"Agent {selector.executor} completed task {selector}")
        return TaskResult.ok(output)
