"""Task executor that forwards tasks to a remote worker over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..utils.cancellation import CancellationToken
from .base import CapabilitySelector, TaskExecutor, TaskResult

logger = logging.getLogger(__name__)


class HttpTaskExecutor(TaskExecutor):
    """POST tasks to ``{base_url}/tasks``.

    The request body carries ``executor``, ``action``, ``input`` and
    ``timeout``. The worker answers with a JSON ``TaskResult``
    (``success``, ``output``, ``error``); a non-2xx status or a transport
    error is reported as a failed task.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8080",
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            timeout=timeout, headers={"Content-Type": "application/json", **(headers or {})}
        )

    async def assign_task(
        self,
        selector: CapabilitySelector,
        input: dict[str, Any],
        timeout: Optional[float],
        cancellation: Optional[CancellationToken] = None,
    ) -> TaskResult:
        if cancellation is not None and cancellation.cancelled:
            return TaskResult.failed("Task cancelled before start")

        body = {
            "executor": selector.executor,
            "action": selector.action,
            "input": input,
            "timeout": timeout,
        }
        try:
            response = await self._client.post(
                f"{self.base_url}/tasks", json=body, timeout=timeout or self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                f"Worker rejected task {selector}: HTTP {exc.response.status_code}"
            )
            return TaskResult.failed(
                f"HTTP {exc.response.status_code}: {exc.response.text}"
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Could not reach worker for task {selector}: {exc}")
            return TaskResult.failed(f"{type(exc).__name__}: {exc}")

        return TaskResult.model_validate(response.json())

    async def aclose(self) -> None:
        await self._client.aclose()
