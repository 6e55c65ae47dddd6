"""Dependency resolution for workflow steps."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .contracts import BaseStep
from .errors import CyclicDependencyError, ValidationError

logger = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


def _build_graph(
    steps: Sequence[BaseStep],
) -> tuple[dict[str, int], dict[str, list[str]], dict[str, int]]:
    """Return declaration order, dependency -> dependents edges and in-degrees."""
    order = {step.id: index for index, step in enumerate(steps)}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}
    in_degree = {step.id: 0 for step in steps}

    for step in steps:
        for dep in dict.fromkeys(step.depends_on):
            if dep not in order:
                raise ValidationError(
                    f"Step '{step.id}' depends on undefined step '{dep}'"
                )
            dependents[dep].append(step.id)
            in_degree[step.id] += 1
    return order, dependents, in_degree


def find_cycle(steps: Sequence[BaseStep]) -> Optional[list[str]]:
    """Find one dependency cycle using DFS colouring.

    Returns:
        The cycle as a list of step ids that starts and ends on the same id,
        or ``None`` when the graph is acyclic.
    """
    deps = {step.id: list(step.depends_on) for step in steps}
    color = {step_id: WHITE for step_id in deps}
    stack: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        color[node] = GRAY
        stack.append(node)
        for dep in deps[node]:
            if dep not in color:
                continue
            if color[dep] == GRAY:
                return stack[stack.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for step_id in deps:
        if color[step_id] == WHITE:
            found = visit(step_id)
            if found:
                return found
    return None


def build_execution_plan(steps: Sequence[BaseStep]) -> list[list[str]]:
    """Group ``steps`` into sequential batches of concurrently runnable ids.

    Kahn's algorithm: every round takes all steps whose remaining in-degree is
    zero as one batch. Ids inside a batch keep declaration order so the plan
    is deterministic for a given input ordering.

    Raises:
        ValidationError: A step depends on an id not in ``steps``.
        CyclicDependencyError: The dependency graph is not acyclic.
    """
    order, dependents, in_degree = _build_graph(steps)
    remaining = dict(in_degree)
    ready = [step_id for step_id in order if remaining[step_id] == 0]
    batches: list[list[str]] = []
    scheduled = 0

    while ready:
        batch = sorted(ready, key=order.__getitem__)
        batches.append(batch)
        scheduled += len(batch)
        ready = []
        for step_id in batch:
            for dependent in dependents[step_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    ready.append(dependent)

    if scheduled != len(order):
        unscheduled = [step_id for step_id in order if remaining[step_id] > 0]
        cycle = find_cycle(steps) or unscheduled
        raise CyclicDependencyError(cycle)

    logger.debug(f"Execution plan with {len(batches)} batches: {batches}")
    return batches


def dependents_of(steps: Sequence[BaseStep], step_id: str) -> set[str]:
    """Return every step that transitively depends on ``step_id``."""
    direct: dict[str, list[str]] = {step.id: [] for step in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep in direct:
                direct[dep].append(step.id)

    found: set[str] = set()
    pending = list(direct.get(step_id, []))
    while pending:
        current = pending.pop()
        if current in found:
            continue
        found.add(current)
        pending.extend(direct.get(current, []))
    return found
