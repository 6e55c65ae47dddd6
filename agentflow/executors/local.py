"""In-process task executor backed by a registry of Python callables."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from ..utils.cancellation import CancellationToken
from .base import CapabilitySelector, TaskExecutor, TaskResult

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class LocalTaskExecutor(TaskExecutor):
    """Dispatch tasks to registered functions.

    Handlers receive the resolved task input as keyword arguments and may be
    sync or async; sync handlers run in a worker thread. A handler that
    returns :class:`TaskResult` controls success itself, any other return
    value becomes the task output.

    Example:
        executor = LocalTaskExecutor()

        @executor.capability("email", action="send")
        async def send(to: str, body: str) -> dict:
            ...
    """

    def __init__(self) -> None:
        self._handlers: Dict[tuple[str, Optional[str]], Handler] = {}

    def register(
        self, executor: str, handler: Handler, action: Optional[str] = None
    ) -> None:
        self._handlers[(executor, action)] = handler
        logger.debug(f"Registered capability {executor}.{action or '*'}")

    def capability(
        self, executor: str, action: Optional[str] = None
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(executor, handler, action)
            return handler

        return decorator

    def _resolve(self, selector: CapabilitySelector) -> Optional[Handler]:
        return self._handlers.get(
            (selector.executor, selector.action)
        ) or self._handlers.get((selector.executor, None))

    async def assign_task(
        self,
        selector: CapabilitySelector,
        input: dict[str, Any],
        timeout: Optional[float],
        cancellation: Optional[CancellationToken] = None,
    ) -> TaskResult:
        handler = self._resolve(selector)
        if handler is None:
            return TaskResult.failed(f"No capability registered for '{selector}'")
        if cancellation is not None and cancellation.cancelled:
            return TaskResult.failed("Task cancelled before start")

        if inspect.iscoroutinefunction(handler):
            call = handler(**input)
        else:
            call = asyncio.to_thread(handler, **input)

        try:
            result = await call
        except Exception as exc:
            logger.warning(f"Capability {selector} raised {type(exc).__name__}: {exc}")
            return TaskResult.failed(str(exc) or type(exc).__name__)

        if isinstance(result, TaskResult):
            return result
        return TaskResult.ok(result)
