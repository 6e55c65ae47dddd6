"""Failure policy decisions and best-effort compensation."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel

from .constants import COMPENSATION_SCOPE, DEFAULT_MAX_BACKOFF
from .contracts import BaseStep, ErrorHandling, ErrorStrategy, WorkflowDefinition
from .errors import FATAL_ERRORS, CompensationError
from .persistence.models import CompensationRecord, StepStatus, WorkflowInstance
from .persistence.store import StateStore
from .utils.retry import backoff_for

if TYPE_CHECKING:
    from .execute import ExecutionContext, StepExecutor

logger = logging.getLogger(__name__)


class DecisionAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"
    CONTINUE = "continue"
    COMPENSATE = "compensate"


class Decision(BaseModel):
    """What to do after a step attempt failed."""

    action: DecisionAction
    delay: float = 0.0


def effective_policy(definition: WorkflowDefinition, step: BaseStep) -> ErrorHandling:
    """Merge the step ``retryPolicy`` over the workflow ``errorHandling``."""
    base = definition.error_handling
    override = step.retry_policy
    if override is None:
        return base
    return ErrorHandling(
        strategy=override.strategy or base.strategy,
        max_retries=(
            override.max_retries if override.max_retries is not None else base.max_retries
        ),
        backoff=override.backoff or base.backoff,
    )


def is_fatal(error: Optional[BaseException]) -> bool:
    return isinstance(error, FATAL_ERRORS)


class ErrorHandler:
    """Maps a failure and its policy to a :class:`Decision`."""

    def __init__(self, max_backoff: Optional[float] = DEFAULT_MAX_BACKOFF) -> None:
        self.max_backoff = max_backoff

    def decide(
        self,
        policy: ErrorHandling,
        error: Optional[BaseException],
        retry_count: int,
        can_retry: bool = True,
    ) -> Decision:
        """Decide how to react to ``error``.

        Args:
            policy: Effective policy of the failed step.
            error: The exception raised by the attempt.
            retry_count: Retries already performed for the step.
            can_retry: ``False`` for steps that are never retried as a whole.
        """
        fatal = is_fatal(error)
        strategy = policy.strategy
        if (
            can_retry
            and not fatal
            and strategy.retries
            and retry_count < policy.max_retries
        ):
            delay = backoff_for(policy.backoff, retry_count, self.max_backoff)
            return Decision(action=DecisionAction.RETRY, delay=delay)

        if strategy in (ErrorStrategy.RETRY_THEN_CONTINUE, ErrorStrategy.CONTINUE):
            if fatal:
                return Decision(action=DecisionAction.FAIL)
            return Decision(action=DecisionAction.CONTINUE)
        if strategy == ErrorStrategy.COMPENSATE:
            return Decision(action=DecisionAction.COMPENSATE)
        return Decision(action=DecisionAction.FAIL)


class CompensationHandler:
    """Runs declared compensation steps in reverse completion order."""

    def __init__(self, store: StateStore, step_executor: "StepExecutor") -> None:
        self.store = store
        self.step_executor = step_executor

    async def compensate(
        self, context: "ExecutionContext", instance: WorkflowInstance
    ) -> list[CompensationRecord]:
        """Compensate every completed top-level step of ``instance``.

        Failures are logged and recorded; they never stop the walk.
        """
        definition = instance.definition
        top_level = {step.id for step in definition.top_level_steps()}
        completed = sorted(
            (
                state
                for step_id, state in instance.steps.items()
                if step_id in top_level and state.status == StepStatus.COMPLETED
            ),
            key=lambda state: state.completion_seq or 0,
            reverse=True,
        )

        records: list[CompensationRecord] = []
        for state in completed:
            step = definition.get_step(state.step_id)
            if not step.compensation:
                continue
            compensation_step = definition.get_step(step.compensation)
            nested = context.nested(
                prefix=f"{COMPENSATION_SCOPE}/{step.id}",
                scope={
                    **context.scope,
                    "compensating": {"step_id": step.id, "outputs": state.outputs},
                },
                deadline=None,
            )
            logger.info(
                f"Compensating step {step.id} with {compensation_step.id} "
                f"in workflow {instance.id}"
            )
            result = await self.step_executor.run(nested, compensation_step)

            if result.status == StepStatus.COMPLETED:
                await self.store.transition_step(
                    instance.id, step.id, StepStatus.COMPLETED, StepStatus.COMPENSATED
                )
                record = CompensationRecord(
                    step_id=step.id,
                    compensation_step_id=compensation_step.id,
                    succeeded=True,
                )
            else:
                message = str(result.error) if result.error else result.status.value
                error = CompensationError(step.id, compensation_step.id, message)
                logger.error(f"{error} (workflow {instance.id})")
                record = CompensationRecord(
                    step_id=step.id,
                    compensation_step_id=compensation_step.id,
                    succeeded=False,
                    error=message,
                )
            await self.store.append_compensation(instance.id, record)
            records.append(record)
        return records
