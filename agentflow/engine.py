"""Workflow orchestration for agentflow."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .compensation import (
    CompensationHandler,
    DecisionAction,
    ErrorHandler,
    effective_policy,
)
from .config import AgentflowConfig, load_config
from .contracts import BaseStep, ErrorStrategy, SubworkflowStep, WorkflowDefinition
from .errors import (
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
    WorkflowTimeoutError,
)
from .execute import ExecutionContext, StepExecutor, StepResult
from .executors.base import TaskExecutor
from .expressions import resolve_value
from .persistence import get_state_store
from .persistence.models import (
    InstanceUpdate,
    StepStatus,
    StepUpdate,
    WorkflowErrorInfo,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .persistence.store import StateStore
from .reporting import WorkflowReport, build_report
from .resolver import build_execution_plan, dependents_of
from .utils.cancellation import CancellationToken
from .validation import validate, validate_inputs

logger = logging.getLogger(__name__)

_ACTIVE = (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)
_NOT_STARTED = (WorkflowStatus.CREATED, WorkflowStatus.INITIALIZED)
_BLOCKED_PREFIX = "blocked by "


@dataclass
class _RunHandle:
    instance_id: str
    token: CancellationToken
    deadline: Optional[float] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class WorkflowEngine:
    """Drives workflow instances batch by batch.

    Each instance is executed by a background task. Steps of one batch run
    concurrently; a batch starts only after the previous one has settled.
    Pause and cancellation take effect at batch boundaries.

    Example:
        executor = LocalTaskExecutor()
        engine = WorkflowEngine(executor)
        instance = await engine.run(load_definition("order.yaml"), {"order_id": 7})
    """

    def __init__(
        self,
        executor: TaskExecutor,
        store: Optional[StateStore] = None,
        config: Optional[AgentflowConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.executor = executor
        self.store = store or get_state_store(config=self.config)
        self.error_handler = ErrorHandler(self.config.engine.max_backoff)
        self.step_executor = StepExecutor(
            self.store,
            executor,
            config=self.config.engine,
            error_handler=self.error_handler,
            subworkflow_runner=self._run_subworkflow,
        )
        self.compensation = CompensationHandler(self.store, self.step_executor)
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._handles: dict[str, _RunHandle] = {}

    # ------------------------------------------------------------------
    # Definitions
    def register_definition(self, definition: WorkflowDefinition) -> None:
        """Make ``definition`` available to ``workflowRef`` subworkflow steps."""
        self._definitions[definition.id] = definition
        logger.debug(f"Registered workflow definition {definition.id} v{definition.version}")

    def _check_definition(self, definition: WorkflowDefinition) -> None:
        known = set(self._definitions) | {definition.id}
        validate(definition, known_workflows=known).raise_for_errors()

    # ------------------------------------------------------------------
    # Control surface
    async def start(
        self, definition: WorkflowDefinition, inputs: Optional[dict[str, Any]] = None
    ) -> str:
        """Validate ``definition`` and ``inputs`` and start a new instance.

        Raises:
            ValidationError: The definition or the inputs are invalid.
        """
        self._check_definition(definition)
        resolved = validate_inputs(definition, inputs)
        build_execution_plan(definition.top_level_steps())

        instance_id = await self.store.create_instance(definition, resolved)
        await self.store.transition_instance(
            instance_id, [WorkflowStatus.CREATED], WorkflowStatus.INITIALIZED
        )
        handle = _RunHandle(
            instance_id=instance_id,
            token=CancellationToken(),
            deadline=self._deadline(definition.timeout),
        )
        self._spawn(handle)
        logger.info(f"Started workflow {definition.id} as instance {instance_id}")
        return instance_id

    async def run(
        self, definition: WorkflowDefinition, inputs: Optional[dict[str, Any]] = None
    ) -> WorkflowInstance:
        """Start an instance and wait for it to finish."""
        instance_id = await self.start(definition, inputs)
        return await self.wait(instance_id)

    async def wait(
        self, instance_id: str, timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """Wait until the instance reaches a terminal status.

        Raises:
            asyncio.TimeoutError: ``timeout`` elapsed first.
        """
        handle = self._handles.get(instance_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout)
            return await self.get_status(instance_id)

        async def poll() -> WorkflowInstance:
            while True:
                instance = await self.get_status(instance_id)
                if instance.status.is_terminal:
                    return instance
                await asyncio.sleep(self.config.engine.poll_interval)

        return await asyncio.wait_for(poll(), timeout)

    async def pause(self, instance_id: str) -> bool:
        paused = await self.store.transition_instance(
            instance_id, [WorkflowStatus.RUNNING], WorkflowStatus.PAUSED
        )
        if paused:
            logger.info(f"Paused workflow instance {instance_id}")
        return paused

    async def resume(self, instance_id: str) -> bool:
        resumed = await self.store.transition_instance(
            instance_id, [WorkflowStatus.PAUSED], WorkflowStatus.RUNNING
        )
        if resumed:
            logger.info(f"Resumed workflow instance {instance_id}")
        return resumed

    async def cancel(self, instance_id: str) -> bool:
        """Request cancellation; ``False`` when nothing was left to cancel.

        Raises:
            KeyError: The instance is unknown.
        """
        instance = await self.get_status(instance_id)
        if instance.status.is_terminal:
            return False

        handle = self._handles.get(instance_id)
        if handle is not None and not handle.token.cancel():
            return False

        immediate = [WorkflowStatus.PAUSED, *_NOT_STARTED]
        if handle is None or handle.task is None or handle.task.done():
            immediate.append(WorkflowStatus.RUNNING)
        if await self.store.transition_instance(
            instance_id, immediate, WorkflowStatus.CANCELLED
        ):
            logger.info(f"Cancelled workflow instance {instance_id}")
        else:
            logger.info(f"Cancellation requested for workflow instance {instance_id}")
        return True

    async def get_status(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise KeyError(instance_id)
        return instance

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        return await self.store.list_instances(status)

    async def report(self, instance_id: str) -> WorkflowReport:
        return build_report(await self.get_status(instance_id))

    async def recover(self, instance_id: str) -> bool:
        """Resume driving a non-terminal instance from its persisted state.

        Steps left ``running`` by a crashed scheduler are reset to
        ``pending``; terminal step states are reused as they are.
        """
        instance = await self.get_status(instance_id)
        if instance.status.is_terminal:
            return False
        handle = self._handles.get(instance_id)
        if handle is not None and handle.task is not None and not handle.task.done():
            return False

        for key, state in instance.steps.items():
            if state.status == StepStatus.RUNNING:
                await self.store.transition_step(
                    instance_id, key, StepStatus.RUNNING, StepStatus.PENDING, StepUpdate()
                )
                logger.info(f"Reset interrupted step {key} of instance {instance_id}")
        await self.store.transition_instance(
            instance_id, [WorkflowStatus.CREATED], WorkflowStatus.INITIALIZED
        )

        timeout = instance.definition.timeout
        if timeout is not None and instance.started_at is not None:
            timeout -= (utcnow() - instance.started_at).total_seconds()
        handle = _RunHandle(
            instance_id=instance_id,
            token=CancellationToken(),
            deadline=self._deadline(timeout),
        )
        self._spawn(handle)
        logger.info(f"Recovering workflow instance {instance_id}")
        return True

    async def shutdown(self) -> None:
        """Stop driving instances; interrupted ones can be recovered later."""
        tasks = [
            handle.task
            for handle in self._handles.values()
            if handle.task is not None and not handle.task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._handles.clear()
        await self.executor.aclose()

    # ------------------------------------------------------------------
    # Driving instances
    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    def _spawn(self, handle: _RunHandle) -> None:
        self._handles[handle.instance_id] = handle
        handle.task = asyncio.create_task(self._drive_safely(handle))

    def _release(self, handle: _RunHandle) -> None:
        if self._handles.get(handle.instance_id) is handle:
            del self._handles[handle.instance_id]
        handle.token.detach()

    async def _drive_safely(self, handle: _RunHandle) -> None:
        try:
            await self._drive(handle)
        except Exception as exc:
            logger.exception(f"Workflow instance {handle.instance_id} crashed")
            await self.store.transition_instance(
                handle.instance_id,
                [*_ACTIVE, *_NOT_STARTED],
                WorkflowStatus.FAILED,
                InstanceUpdate(
                    error=WorkflowErrorInfo(error_type=type(exc).__name__, message=str(exc))
                ),
            )
        finally:
            self._release(handle)

    async def _drive(self, handle: _RunHandle) -> None:
        instance_id = handle.instance_id
        instance = await self.get_status(instance_id)
        definition = instance.definition
        await self.store.transition_instance(
            instance_id, [WorkflowStatus.INITIALIZED], WorkflowStatus.RUNNING
        )

        plan = build_execution_plan(definition.top_level_steps())
        context = ExecutionContext(
            instance_id=instance_id,
            definition=definition,
            scope=self._build_scope(instance),
            token=handle.token,
            deadline=handle.deadline,
        )

        for batch in plan:
            if not await self._checkpoint(handle, context):
                return
            snapshot = await self.get_status(instance_id)
            runnable: list[BaseStep] = []
            for step_id in batch:
                step = definition.get_step(step_id)
                blocker = self._blocking_dependency(snapshot, step)
                if blocker is None:
                    runnable.append(step)
                    continue
                await self.store.transition_step(
                    instance_id,
                    step_id,
                    StepStatus.PENDING,
                    StepStatus.SKIPPED,
                    StepUpdate(skip_reason=f"{_BLOCKED_PREFIX}{blocker}"),
                )
                logger.info(f"Step {step_id} skipped: blocked by {blocker}")

            results = await asyncio.gather(
                *(self.step_executor.run(context, step) for step in runnable)
            )
            if handle.token.cancelled:
                await self._finish_cancelled(instance_id)
                return
            for step, result in zip(runnable, results):
                if result.cancelled:
                    return
                if result.status == StepStatus.FAILED and not result.tolerated:
                    await self._finish_failed(context, step, result)
                    return
                if result.tolerated and self._blocks_dependents(definition, step.id):
                    blocked = dependents_of(definition.top_level_steps(), step.id)
                    if blocked:
                        logger.warning(
                            f"Step {step.id} of instance {instance_id} failed; "
                            f"skipping its dependents {sorted(blocked)}"
                        )

        if not await self._checkpoint(handle, context):
            return
        await self._finish_completed(context)

    async def _checkpoint(self, handle: _RunHandle, context: ExecutionContext) -> bool:
        """Gate the next batch on pause, cancellation and the workflow deadline."""
        while True:
            if handle.token.cancelled:
                await self._finish_cancelled(handle.instance_id)
                return False
            remaining = context.remaining()
            if remaining is not None and remaining <= 0:
                error = WorkflowTimeoutError(
                    f"Workflow {handle.instance_id} exceeded its timeout"
                )
                decision = self.error_handler.decide(
                    context.definition.error_handling, error, 0, can_retry=False
                )
                await self._finish_failed(
                    context,
                    None,
                    StepResult(status=StepStatus.FAILED, error=error, decision=decision),
                )
                return False
            instance = await self.get_status(handle.instance_id)
            if instance.status.is_terminal:
                return False
            if instance.status != WorkflowStatus.PAUSED:
                return True
            await handle.token.wait(timeout=self.config.engine.poll_interval)

    def _blocking_dependency(
        self, instance: WorkflowInstance, step: BaseStep
    ) -> Optional[str]:
        for dep in step.depends_on:
            state = instance.step_state(dep)
            if state.status == StepStatus.COMPLETED:
                continue
            if state.status == StepStatus.SKIPPED and not (
                state.skip_reason or ""
            ).startswith(_BLOCKED_PREFIX):
                continue
            if state.status == StepStatus.FAILED and state.tolerated:
                if not self._blocks_dependents(instance.definition, dep):
                    continue
            return dep
        return None

    def _blocks_dependents(self, definition: WorkflowDefinition, step_id: str) -> bool:
        """Only a failure tolerated under ``Continue`` lets dependents run."""
        policy = effective_policy(definition, definition.get_step(step_id))
        return policy.strategy != ErrorStrategy.CONTINUE

    def _build_scope(self, instance: WorkflowInstance) -> dict[str, Any]:
        scope: dict[str, Any] = dict(instance.variables)
        for step in instance.definition.steps:
            state = instance.steps.get(step.id)
            if state is not None and state.status == StepStatus.COMPLETED:
                scope[step.id] = state.outputs
        scope["inputs"] = dict(instance.inputs)
        return scope

    # ------------------------------------------------------------------
    # Finalisation
    async def _finish_completed(self, context: ExecutionContext) -> None:
        outputs = {
            name: resolve_value(spec.value, context.scope)
            for name, spec in context.definition.outputs.items()
        }
        if await self.store.transition_instance(
            context.instance_id,
            [WorkflowStatus.RUNNING],
            WorkflowStatus.COMPLETED,
            InstanceUpdate(outputs=outputs),
        ):
            logger.info(f"Workflow instance {context.instance_id} completed")

    async def _finish_cancelled(self, instance_id: str) -> None:
        if await self.store.transition_instance(
            instance_id, [*_ACTIVE, *_NOT_STARTED], WorkflowStatus.CANCELLED
        ):
            logger.info(f"Workflow instance {instance_id} cancelled")

    async def _finish_failed(
        self,
        context: ExecutionContext,
        step: Optional[BaseStep],
        result: StepResult,
    ) -> None:
        error = result.error
        error_info = WorkflowErrorInfo(
            step_id=step.id if step else None,
            attempt=result.attempts,
            error_type=getattr(error, "error_type", None) or type(error).__name__,
            message=getattr(error, "message", None) or str(error),
        )
        status = WorkflowStatus.FAILED
        if result.decision is not None and result.decision.action == DecisionAction.COMPENSATE:
            instance = await self.get_status(context.instance_id)
            await self.compensation.compensate(context, instance)
            status = WorkflowStatus.COMPENSATED

        if await self.store.transition_instance(
            context.instance_id, list(_ACTIVE), status, InstanceUpdate(error=error_info)
        ):
            logger.error(
                f"Workflow instance {context.instance_id} {status.value}: "
                f"step {error_info.step_id} {error_info.error_type}: {error_info.message}"
            )

    # ------------------------------------------------------------------
    # Subworkflows
    async def _run_subworkflow(
        self,
        context: ExecutionContext,
        step: SubworkflowStep,
        inputs: dict[str, Any],
        attempt: int,
    ) -> Any:
        if step.workflow is not None:
            definition = step.workflow
        elif step.workflow_ref in self._definitions:
            definition = self._definitions[step.workflow_ref]
        else:
            raise ValidationError(
                f"Subworkflow '{step.id}' references unknown workflow '{step.workflow_ref}'"
            )
        self._check_definition(definition)
        resolved = validate_inputs(definition, inputs)

        child_id = f"{context.instance_id}:{context.key(step.id)}:{attempt}"
        existing = await self.store.get_instance(child_id)
        if existing is None:
            await self.store.create_instance(
                definition, resolved, instance_id=child_id, parent_id=context.instance_id
            )
            await self.store.transition_instance(
                child_id, [WorkflowStatus.CREATED], WorkflowStatus.INITIALIZED
            )

        deadline = self._deadline(definition.timeout)
        for limit in (context.deadline, context.step_deadline):
            if limit is not None:
                deadline = limit if deadline is None else min(deadline, limit)
        handle = _RunHandle(
            instance_id=child_id, token=context.token.child(), deadline=deadline
        )
        self._handles[child_id] = handle
        logger.info(f"Running subworkflow {definition.id} as instance {child_id}")
        try:
            if existing is None or not existing.status.is_terminal:
                await self._drive(handle)
        except asyncio.CancelledError:
            await self.store.transition_instance(
                child_id,
                [*_ACTIVE, *_NOT_STARTED],
                WorkflowStatus.FAILED,
                InstanceUpdate(
                    error=WorkflowErrorInfo(
                        error_type="CancelledError", message="Interrupted by parent step"
                    )
                ),
            )
            raise
        finally:
            self._release(handle)

        child = await self.get_status(child_id)
        if child.status == WorkflowStatus.COMPLETED:
            return child.outputs
        message = child.error.message if child.error else child.status.value
        if child.error is not None and child.error.error_type == WorkflowTimeoutError.__name__:
            remaining = context.remaining()
            if remaining is not None and remaining <= 0:
                raise WorkflowTimeoutError(f"Subworkflow {child_id} timed out: {message}")
            raise StepTimeoutError(
                f"Subworkflow {child_id} timed out: {message}",
                step_id=step.id,
                attempt=attempt,
            )
        raise StepExecutionError(
            f"Subworkflow {child_id} ended {child.status.value}: {message}",
            step_id=step.id,
            attempt=attempt,
        )
