"""Execution reports for finished or running workflow instances."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .persistence.models import (
    CompensationRecord,
    WorkflowErrorInfo,
    WorkflowInstance,
    WorkflowStatus,
)


class StepSummary(BaseModel):
    step_id: str
    status: str
    attempts: int = 0
    retries: int = 0
    duration: Optional[float] = None
    error: Optional[str] = None
    skip_reason: Optional[str] = None


class TimelineEvent(BaseModel):
    at: datetime
    step_id: str
    event: str


class WorkflowReport(BaseModel):
    """Summary of one instance: outcome, per-step metrics and timeline."""

    instance_id: str
    definition_id: str
    version: str
    status: WorkflowStatus
    success: bool
    duration: Optional[float] = None
    status_counts: dict[str, int] = Field(default_factory=dict)
    total_attempts: int = 0
    steps: list[StepSummary] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)
    compensations: list[CompensationRecord] = Field(default_factory=list)
    outputs: dict = Field(default_factory=dict)
    error: Optional[WorkflowErrorInfo] = None


def build_report(instance: WorkflowInstance) -> WorkflowReport:
    """Summarise ``instance``; nested step executions are listed by scoped key."""
    duration = None
    if instance.started_at and instance.completed_at:
        duration = (instance.completed_at - instance.started_at).total_seconds()

    steps: list[StepSummary] = []
    timeline: list[TimelineEvent] = []
    for key, state in instance.steps.items():
        steps.append(
            StepSummary(
                step_id=key,
                status=state.status.value,
                attempts=state.attempts,
                retries=state.retry_count,
                duration=state.duration,
                error=state.error.message if state.error else None,
                skip_reason=state.skip_reason,
            )
        )
        if state.started_at:
            timeline.append(TimelineEvent(at=state.started_at, step_id=key, event="started"))
        if state.completed_at:
            timeline.append(
                TimelineEvent(at=state.completed_at, step_id=key, event=state.status.value)
            )
    timeline.sort(key=lambda event: event.at)

    return WorkflowReport(
        instance_id=instance.id,
        definition_id=instance.definition_id,
        version=instance.version,
        status=instance.status,
        success=instance.status == WorkflowStatus.COMPLETED,
        duration=duration,
        status_counts=dict(Counter(summary.status for summary in steps)),
        total_attempts=sum(summary.attempts for summary in steps),
        steps=steps,
        timeline=timeline,
        compensations=list(instance.compensation_log),
        outputs=dict(instance.outputs),
        error=instance.error,
    )
