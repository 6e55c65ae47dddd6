"""Step execution for agentflow workflows."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .compensation import (
    Decision,
    DecisionAction,
    ErrorHandler,
    effective_policy,
    is_fatal,
)
from .config import EngineConfig
from .contracts import (
    BaseStep,
    ConditionalStep,
    LoopStep,
    ParallelStep,
    StepKind,
    SubworkflowStep,
    TaskStep,
    WorkflowDefinition,
)
from .errors import (
    AgentflowError,
    ConcurrencyConflictError,
    ExpressionError,
    LoopLimitExceededError,
    StepExecutionError,
    StepTimeoutError,
    WorkflowTimeoutError,
)
from .executors.base import CapabilitySelector, TaskExecutor
from .expressions import evaluate_predicate, resolve_bindings, resolve_value
from .persistence.models import StepErrorInfo, StepState, StepStatus, StepUpdate
from .persistence.store import StateStore
from .utils.cancellation import CancellationToken
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

SubworkflowRunner = Callable[
    ["ExecutionContext", SubworkflowStep, dict[str, Any], int], Awaitable[Any]
]

_UNSET: Any = object()


@dataclass
class ExecutionContext:
    """Where and under which constraints a step runs.

    ``prefix`` scopes the keys nested executions are stored under, and
    ``scope`` is the variable bag expressions are resolved against.
    ``deadline`` is the workflow deadline; ``step_deadline`` is the tightest
    timeout of an enclosing container or subworkflow step, ``step_owner``.
    """

    instance_id: str
    definition: WorkflowDefinition
    scope: dict[str, Any]
    token: CancellationToken = field(default_factory=CancellationToken)
    deadline: Optional[float] = None
    prefix: str = ""
    step_deadline: Optional[float] = None
    step_owner: Optional[str] = None

    def key(self, step_id: str) -> str:
        return f"{self.prefix}/{step_id}" if self.prefix else step_id

    def nested(
        self,
        prefix: Optional[str] = None,
        scope: Optional[dict[str, Any]] = None,
        deadline: Any = _UNSET,
    ) -> "ExecutionContext":
        return dataclasses.replace(
            self,
            prefix=self.prefix if prefix is None else prefix,
            scope=self.scope if scope is None else scope,
            deadline=self.deadline if deadline is _UNSET else deadline,
        )

    def within(self, owner: str, timeout: float) -> "ExecutionContext":
        """Bound everything nested under ``owner`` by its ``timeout``."""
        step_deadline = asyncio.get_running_loop().time() + timeout
        if self.step_deadline is not None and self.step_deadline <= step_deadline:
            return self
        return dataclasses.replace(self, step_deadline=step_deadline, step_owner=owner)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()

    def step_remaining(self) -> Optional[float]:
        if self.step_deadline is None:
            return None
        return self.step_deadline - asyncio.get_running_loop().time()

    def expired(self) -> bool:
        return any(
            remaining is not None and remaining <= 0
            for remaining in (self.remaining(), self.step_remaining())
        )


@dataclass
class StepResult:
    """Outcome of running one step to a resting state."""

    status: StepStatus
    outputs: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    decision: Optional[Decision] = None
    cancelled: bool = False

    @property
    def tolerated(self) -> bool:
        return (
            self.status == StepStatus.FAILED
            and self.decision is not None
            and self.decision.action == DecisionAction.CONTINUE
        )

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED) or self.tolerated


class _RecordedError(StepExecutionError):
    """Failure restored from a persisted step state."""

    def __init__(self, info: StepErrorInfo, step_id: str) -> None:
        super().__init__(info.message, step_id=step_id, attempt=info.attempt)
        self.error_type = info.error_type


class StepExecutor:
    """Executes steps by kind and owns their state transitions.

    :meth:`run` is the entry point: it reuses terminal states, moves the
    step through the store with compare-and-swap transitions, applies
    timeouts and consults the :class:`ErrorHandler` between attempts.
    :meth:`execute` performs a single attempt.
    """

    def __init__(
        self,
        store: StateStore,
        task_executor: TaskExecutor,
        config: Optional[EngineConfig] = None,
        error_handler: Optional[ErrorHandler] = None,
        subworkflow_runner: Optional[SubworkflowRunner] = None,
    ) -> None:
        self.store = store
        self.task_executor = task_executor
        self.config = config or EngineConfig()
        self.error_handler = error_handler or ErrorHandler(self.config.max_backoff)
        self.subworkflow_runner = subworkflow_runner
        self._handlers: dict[StepKind, Callable[..., Awaitable[Any]]] = {
            StepKind.TASK: self._execute_task,
            StepKind.PARALLEL: self._execute_parallel,
            StepKind.CONDITIONAL: self._execute_conditional,
            StepKind.LOOP: self._execute_loop,
            StepKind.SUBWORKFLOW: self._execute_subworkflow,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    async def run(self, context: ExecutionContext, step: BaseStep) -> StepResult:
        key = context.key(step.id)
        state = await self._settled_state(context, key)
        if state is None:
            return StepResult(status=StepStatus.RUNNING, cancelled=True)
        if state.status.is_terminal:
            return self._cached(context, step, state)

        if step.when is not None:
            try:
                allowed = evaluate_predicate(step.when, context.scope)
            except ExpressionError as exc:
                return await self._fail_without_attempt(context, step, key, exc)
            if not allowed:
                await self.store.transition_step(
                    context.instance_id,
                    key,
                    StepStatus.PENDING,
                    StepStatus.SKIPPED,
                    StepUpdate(skip_reason="condition not met"),
                )
                logger.info(f"Step {key} skipped: condition not met")
                return StepResult(status=StepStatus.SKIPPED)

        policy = effective_policy(context.definition, step)
        can_retry = step.kind in (StepKind.TASK, StepKind.SUBWORKFLOW)
        retry_count = state.retry_count
        attempts = state.attempts

        while True:
            attempts += 1
            started = await self.store.transition_step(
                context.instance_id,
                key,
                StepStatus.PENDING,
                StepStatus.RUNNING,
                StepUpdate(attempts=attempts, retry_count=retry_count),
            )
            if not started:
                return await self._resolve_conflict(context, step, key)

            inputs: Optional[dict[str, Any]] = None
            try:
                if isinstance(step, (TaskStep, SubworkflowStep)):
                    inputs = resolve_bindings(step.input_bindings, context.scope)
                outputs = await self._with_timeout(context, step, inputs, attempts)
            except AgentflowError as exc:
                error: BaseException = exc
            except Exception as exc:
                logger.warning(f"Step {key} raised {type(exc).__name__}: {exc}")
                error = exc
            else:
                return await self._complete(context, step, key, inputs, outputs, attempts)

            decision = self.error_handler.decide(
                policy, error, retry_count, can_retry and not context.expired()
            )
            logger.info(
                f"Step {key} failed on attempt {attempts}: {error} -> {decision.action.value}"
            )
            if decision.action != DecisionAction.RETRY:
                return await self._fail(
                    context, key, inputs, error, attempts, retry_count, decision
                )

            retry_count += 1
            requeued = await self.store.transition_step(
                context.instance_id,
                key,
                StepStatus.RUNNING,
                StepStatus.PENDING,
                StepUpdate(
                    retry_count=retry_count,
                    error=StepErrorInfo.from_exception(error, attempts),
                ),
            )
            if not requeued:
                return await self._resolve_conflict(context, step, key)
            if not await schedule_retry(decision.delay, context.token):
                logger.info(f"Retry of step {key} abandoned: workflow cancelled")
                return StepResult(
                    status=StepStatus.PENDING, attempts=attempts, cancelled=True
                )

    async def execute(
        self,
        context: ExecutionContext,
        step: BaseStep,
        inputs: Optional[dict[str, Any]] = None,
        attempt: int = 1,
    ) -> Any:
        """Run one attempt of ``step`` and return its outputs."""
        handler = self._handlers[step.kind]
        return await handler(context, step, inputs, attempt)

    # ------------------------------------------------------------------
    # Step kinds
    async def _execute_task(
        self,
        context: ExecutionContext,
        step: TaskStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        if inputs is None:
            inputs = resolve_bindings(step.input_bindings, context.scope)
        selector = CapabilitySelector(executor=step.executor, action=step.action)
        result = await self.task_executor.assign_task(
            selector, inputs, self._timeout_for(context, step), context.token
        )
        if not result.success:
            raise StepExecutionError(
                result.error or "Task reported failure", step_id=step.id, attempt=attempt
            )
        return result.output

    async def _execute_parallel(
        self,
        context: ExecutionContext,
        step: ParallelStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        nested = context.nested(prefix=context.key(step.id))
        children = [context.definition.get_step(child_id) for child_id in step.steps]
        results = await asyncio.gather(*(self.run(nested, child) for child in children))

        outputs: dict[str, Any] = {}
        failures: list[tuple[StepState, BaseStep, StepResult]] = []
        for child, result in zip(children, results):
            if result.cancelled:
                raise StepExecutionError("Cancelled", step_id=step.id, attempt=attempt)
            if result.status == StepStatus.COMPLETED:
                outputs[child.id] = result.outputs
            elif result.status == StepStatus.FAILED:
                state = await self.store.get_step(
                    context.instance_id, nested.key(child.id)
                )
                failures.append((state, child, result))

        if not failures:
            return outputs
        tolerated = step.continue_on_partial_failure or all(
            result.tolerated for _, _, result in failures
        )
        if tolerated and not any(is_fatal(result.error) for _, _, result in failures):
            logger.info(
                f"Parallel step {step.id} completed with {len(failures)} tolerated failure(s)"
            )
            return outputs

        earliest = min(
            failures,
            key=lambda item: item[0].completed_at.timestamp()
            if item[0] and item[0].completed_at
            else float("inf"),
        )
        raise earliest[2].error or StepExecutionError(
            f"Child step {earliest[1].id} failed", step_id=step.id, attempt=attempt
        )

    async def _execute_conditional(
        self,
        context: ExecutionContext,
        step: ConditionalStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        branch_id = step.else_
        for branch in step.conditions:
            if evaluate_predicate(branch.expression, context.scope):
                branch_id = branch.then
                break
        if branch_id is None:
            logger.info(f"Conditional step {step.id}: no branch matched")
            return {}

        nested = context.nested(prefix=context.key(step.id))
        result = await self.run(nested, context.definition.get_step(branch_id))
        return self._child_outputs(step, result, attempt)

    async def _execute_loop(
        self,
        context: ExecutionContext,
        step: LoopStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        body = context.definition.get_step(step.do)
        outputs: list[Any] = []

        if step.is_enumerating:
            source = resolve_value(step.for_each, context.scope)
            if source is None:
                source = []
            if not isinstance(source, (list, tuple)):
                raise ExpressionError(
                    f"Loop '{step.id}' forEach resolved to {type(source).__name__}, expected a list",
                    step_id=step.id,
                    attempt=attempt,
                )
            if step.max_iterations is not None and len(source) > step.max_iterations:
                raise LoopLimitExceededError(step.id, step.max_iterations)
            for index, item in enumerate(source):
                result = await self._run_iteration(context, step, body, index, item)
                outputs.append(self._child_outputs(step, result, attempt))
            return outputs

        limit = step.max_iterations or self.config.max_loop_iterations
        index = 0
        while True:
            scope = {
                **context.scope,
                "loop": {"index": index, "item": None, "outputs": outputs},
            }
            if not evaluate_predicate(step.while_, scope):
                return outputs
            if index >= limit:
                raise LoopLimitExceededError(step.id, limit)
            result = await self._run_iteration(context, step, body, index, None, outputs)
            outputs.append(self._child_outputs(step, result, attempt))
            index += 1

    async def _run_iteration(
        self,
        context: ExecutionContext,
        step: LoopStep,
        body: BaseStep,
        index: int,
        item: Any,
        previous: Optional[list[Any]] = None,
    ) -> StepResult:
        if context.token.cancelled:
            raise StepExecutionError("Cancelled", step_id=step.id)
        remaining = context.step_remaining()
        if remaining is not None and remaining <= 0:
            raise StepTimeoutError(
                f"Enclosing step {context.step_owner} timed out", step_id=step.id
            )
        loop_scope = {"index": index, "item": item}
        if previous is not None:
            loop_scope["outputs"] = previous
        nested = context.nested(
            prefix=f"{context.key(step.id)}[{index}]",
            scope={**context.scope, "loop": loop_scope},
        )
        return await self.run(nested, body)

    async def _execute_subworkflow(
        self,
        context: ExecutionContext,
        step: SubworkflowStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        if self.subworkflow_runner is None:
            raise StepExecutionError(
                "Subworkflows require a workflow engine", step_id=step.id, attempt=attempt
            )
        if inputs is None:
            inputs = resolve_bindings(step.input_bindings, context.scope)
        return await self.subworkflow_runner(context, step, inputs, attempt)

    # ------------------------------------------------------------------
    # Helpers
    def _child_outputs(self, parent: BaseStep, result: StepResult, attempt: int) -> Any:
        if result.cancelled:
            raise StepExecutionError("Cancelled", step_id=parent.id, attempt=attempt)
        if result.status == StepStatus.FAILED and not result.tolerated:
            raise result.error or StepExecutionError(
                "Nested step failed", step_id=parent.id, attempt=attempt
            )
        if result.status == StepStatus.COMPLETED:
            return result.outputs
        return None

    def _time_budget(
        self, context: ExecutionContext, step: BaseStep
    ) -> tuple[Optional[float], str]:
        """Return the time left for ``step`` and which limit imposes it."""
        budget = step.timeout if step.timeout is not None else self.config.default_step_timeout
        source = "step"
        for remaining, limit in (
            (context.step_remaining(), "enclosing"),
            (context.remaining(), "workflow"),
        ):
            if remaining is not None and (budget is None or remaining < budget):
                budget, source = remaining, limit
        return budget, source

    def _timeout_for(self, context: ExecutionContext, step: BaseStep) -> Optional[float]:
        return self._time_budget(context, step)[0]

    def _timeout_error(
        self, context: ExecutionContext, step: BaseStep, source: str, budget: Optional[float]
    ) -> AgentflowError:
        if source == "workflow":
            return WorkflowTimeoutError(
                f"Workflow {context.instance_id} timed out during step {step.id}"
            )
        if source == "enclosing":
            return StepTimeoutError(
                f"Enclosing step {context.step_owner} timed out", step_id=step.id
            )
        return StepTimeoutError(f"Timed out after {budget}s", step_id=step.id)

    async def _with_timeout(
        self,
        context: ExecutionContext,
        step: BaseStep,
        inputs: Optional[dict[str, Any]],
        attempt: int,
    ) -> Any:
        """Run one attempt of ``step`` within its time budget.

        Tasks are bounded with ``asyncio.wait_for``. Containers and
        subworkflows are never interrupted: their budget becomes the deadline
        of everything nested under them, which then times out on its own.
        """
        budget, source = self._time_budget(context, step)
        if budget is not None and budget <= 0:
            raise self._timeout_error(context, step, source, budget)

        if step.kind != StepKind.TASK:
            bounded = context
            if source == "step" and budget is not None:
                bounded = context.within(context.key(step.id), budget)
            outputs = await self.execute(bounded, step, inputs, attempt)
            remaining = bounded.step_remaining()
            owned = bounded.step_owner == context.key(step.id)
            if owned and remaining is not None and remaining <= 0:
                raise self._timeout_error(context, step, "step", budget)
            return outputs

        try:
            return await asyncio.wait_for(self.execute(context, step, inputs, attempt), budget)
        except AgentflowError:
            raise
        except asyncio.TimeoutError as exc:
            raise self._timeout_error(context, step, source, budget) from exc

    def _cached(
        self, context: ExecutionContext, step: BaseStep, state: StepState
    ) -> StepResult:
        error = _RecordedError(state.error, step.id) if state.error else None
        decision = None
        if state.status == StepStatus.FAILED:
            action = DecisionAction.CONTINUE if state.tolerated else DecisionAction.FAIL
            decision = Decision(action=action)
        if state.status == StepStatus.COMPLETED:
            self._publish(context, step, state.outputs)
        return StepResult(
            status=state.status,
            outputs=state.outputs,
            error=error,
            attempts=state.attempts,
            decision=decision,
        )

    def _publish(self, context: ExecutionContext, step: BaseStep, outputs: Any) -> None:
        context.scope[step.id] = outputs
        if step.output_var:
            context.scope[step.output_var] = outputs

    async def _complete(
        self,
        context: ExecutionContext,
        step: BaseStep,
        key: str,
        inputs: Optional[dict[str, Any]],
        outputs: Any,
        attempts: int,
    ) -> StepResult:
        recorded = await self.store.transition_step(
            context.instance_id,
            key,
            StepStatus.RUNNING,
            StepStatus.COMPLETED,
            StepUpdate(inputs=inputs, outputs=outputs, error=None),
        )
        if not recorded:
            return await self._resolve_conflict(context, step, key)
        self._publish(context, step, outputs)
        if step.output_var:
            await self.store.append_variable(context.instance_id, step.output_var, outputs)
        logger.info(f"Step {key} completed after {attempts} attempt(s)")
        return StepResult(status=StepStatus.COMPLETED, outputs=outputs, attempts=attempts)

    async def _fail(
        self,
        context: ExecutionContext,
        key: str,
        inputs: Optional[dict[str, Any]],
        error: BaseException,
        attempts: int,
        retry_count: int,
        decision: Decision,
    ) -> StepResult:
        recorded = await self.store.transition_step(
            context.instance_id,
            key,
            StepStatus.RUNNING,
            StepStatus.FAILED,
            StepUpdate(
                inputs=inputs,
                error=StepErrorInfo.from_exception(error, attempts),
                retry_count=retry_count,
                tolerated=decision.action == DecisionAction.CONTINUE,
            ),
        )
        if not recorded:
            logger.warning(f"Failure of step {key} was not recorded")
        return StepResult(
            status=StepStatus.FAILED, error=error, attempts=attempts, decision=decision
        )

    async def _fail_without_attempt(
        self,
        context: ExecutionContext,
        step: BaseStep,
        key: str,
        error: BaseException,
    ) -> StepResult:
        policy = effective_policy(context.definition, step)
        decision = self.error_handler.decide(policy, error, 0, can_retry=False)
        await self.store.transition_step(
            context.instance_id,
            key,
            StepStatus.PENDING,
            StepStatus.FAILED,
            StepUpdate(
                error=StepErrorInfo.from_exception(error),
                tolerated=decision.action == DecisionAction.CONTINUE,
            ),
        )
        return StepResult(status=StepStatus.FAILED, error=error, decision=decision)

    async def _settled_state(
        self, context: ExecutionContext, key: str
    ) -> Optional[StepState]:
        """Return the step state once no other scheduler is running it.

        ``None`` means the instance reached a terminal status meanwhile.
        """
        while True:
            state = await self.store.get_step(context.instance_id, key)
            if state is None:
                return StepState(step_id=key)
            if state.status != StepStatus.RUNNING:
                return state
            instance = await self.store.get_instance(context.instance_id)
            if instance is None or instance.status.is_terminal:
                return None
            await asyncio.sleep(self.config.poll_interval)

    async def _resolve_conflict(
        self, context: ExecutionContext, step: BaseStep, key: str
    ) -> StepResult:
        """Handle a lost compare-and-swap on ``key``."""
        for _ in range(self.config.conflict_retries):
            instance = await self.store.get_instance(context.instance_id)
            if instance is None or instance.status.is_terminal:
                return StepResult(status=StepStatus.RUNNING, cancelled=True)
            state = await self._settled_state(context, key)
            if state is None:
                return StepResult(status=StepStatus.RUNNING, cancelled=True)
            if state.status.is_terminal:
                logger.debug(f"Step {key} was settled by another scheduler")
                return self._cached(context, step, state)
            await asyncio.sleep(self.config.poll_interval)
        current = await self.store.get_step(context.instance_id, key)
        raise ConcurrencyConflictError(
            context.instance_id,
            key,
            StepStatus.PENDING.value,
            current.status.value if current else None,
        )
