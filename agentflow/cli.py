"""Command line interface for agentflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from agentflow.cli_utils.workflow import (
    _format_instance_line,
    _format_step_line,
    _load_executor,
    _parse_inputs,
)
from agentflow.config import load_config
from agentflow.engine import WorkflowEngine
from agentflow.errors import AgentflowError
from agentflow.executors import get_executor
from agentflow.loader import load_definition
from agentflow.persistence import WorkflowStatus, get_state_store
from agentflow.reporting import build_report
from agentflow.resolver import build_execution_plan
from agentflow.validation import validate

app = typer.Typer(help="CLI for agentflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")

app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level, e.g. DEBUG"),
) -> None:
    """agentflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_or_exit(path: Path):
    try:
        return load_definition(path)
    except AgentflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow definition file for errors.

    Example:
        agentflow workflow validate ./guides/order_workflow.yaml
        # Output: Workflow order-fulfilment v1 is valid (5 steps)
    """
    definition = _load_or_exit(path)
    result = validate(definition)
    if result.ok:
        typer.echo(
            f"Workflow {definition.id} v{definition.version} is valid "
            f"({len(definition.steps)} steps)"
        )
        return
    typer.secho(f"Workflow {definition.id} is invalid:", fg=typer.colors.RED)
    for issue in result.errors:
        location = f" [{issue.step_id}]" if issue.step_id else ""
        typer.echo(f"- {issue.kind.value}{location}: {issue.message}")
    raise typer.Exit(code=1)


@workflow_app.command("plan")
def workflow_plan(path: Path) -> None:
    """
    Print the execution batches of a workflow definition.

    Steps on the same line run concurrently.

    Example:
        agentflow workflow plan ./guides/order_workflow.yaml
        # Output: 1: reserve, charge
        #         2: ship
    """
    definition = _load_or_exit(path)
    try:
        plan = build_execution_plan(definition.top_level_steps())
    except AgentflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for index, batch in enumerate(plan, start=1):
        typer.echo(f"{index}: {', '.join(batch)}")


@workflow_app.command("run")
def workflow_run(
    path: Path,
    input: Optional[List[str]] = typer.Option(
        None, "--input", "-i", help="Workflow input as key=value; repeatable"
    ),
    executor: Optional[str] = typer.Option(
        None, help="Task executor as module:attribute, defaults to the configured backend"
    ),
) -> None:
    """
    Run a workflow definition to completion.

    Prints the instance id, final status and outputs. Exits with code 1
    when the instance does not complete.

    Example:
        agentflow workflow run ./guides/order_workflow.yaml -i order_id=42 \\
            --executor guides.order_tasks:executor
    """
    definition = _load_or_exit(path)
    try:
        inputs = _parse_inputs(input)
        task_executor = _load_executor(executor) if executor else get_executor()
    except (ValueError, TypeError, ImportError, AttributeError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run():
        engine = WorkflowEngine(task_executor, store=get_state_store())
        try:
            return await engine.run(definition, inputs)
        finally:
            await engine.shutdown()

    try:
        instance = asyncio.run(_run())
    except AgentflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Instance {instance.id}: {instance.status.value.upper()}")
    if instance.outputs:
        typer.echo(f"Outputs: {json.dumps(instance.outputs, default=str)}")
    if instance.error:
        typer.echo(f"Error in {instance.error.step_id}: {instance.error.message}")
    if instance.status != WorkflowStatus.COMPLETED:
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List workflow instances with their current status.

    Example:
        agentflow workflow list --status running
        # Output: 3f2c...    order-fulfilment@1    RUNNING
    """
    store = get_state_store()
    instances = asyncio.run(store.list_instances(status))
    if not instances:
        typer.echo("No workflows found")
        return
    for instance in instances:
        typer.echo(_format_instance_line(instance))


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show detailed information for a workflow instance.

    Example:
        agentflow workflow show 3f2c...
        # Output: Workflow 3f2c... (order-fulfilment v1): COMPLETED
        #         - reserve: COMPLETED (2024-01-01 10:00 -> 10:01)
    """
    store = get_state_store()
    instance = asyncio.run(store.get_instance(instance_id))
    if instance is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Workflow {instance.id} ({instance.definition_id} v{instance.version}): "
        f"{instance.status.value.upper()}"
    )
    if instance.inputs:
        typer.echo(f"Inputs: {json.dumps(instance.inputs, default=str)}")
    for key, state in instance.steps.items():
        typer.echo(_format_step_line(key, state))
    if instance.outputs:
        typer.echo(f"Outputs: {json.dumps(instance.outputs, default=str)}")
    if instance.error:
        typer.echo(f"Error: {instance.error.error_type}: {instance.error.message}")


@workflow_app.command("report")
def workflow_report(instance_id: str) -> None:
    """
    Print the execution report of a workflow instance as JSON.

    Example:
        agentflow workflow report 3f2c...
    """
    store = get_state_store()
    instance = asyncio.run(store.get_instance(instance_id))
    if instance is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(build_report(instance).model_dump_json(indent=2))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
