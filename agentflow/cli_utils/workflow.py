"""Helpers for the workflow CLI commands."""

from __future__ import annotations

import importlib
import inspect
import os
import sys
from typing import Any, Iterable, Optional

import yaml

from ..executors.base import TaskExecutor
from ..persistence.models import StepState, WorkflowInstance


def _parse_inputs(pairs: Optional[Iterable[str]]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a mapping; values are parsed as YAML scalars."""
    inputs: dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got {pair!r}")
        key, raw = pair.split("=", 1)
        try:
            inputs[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            inputs[key.strip()] = raw
    return inputs


def _load_executor(spec: str) -> TaskExecutor:
    """Import ``module:attr`` and return the executor it names.

    ``attr`` may be an executor instance or a zero-argument factory. The
    current directory is importable while the module loads.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected module:attribute, got {spec!r}")

    cwd = os.getcwd()
    added = cwd not in sys.path
    if added:
        sys.path.insert(0, cwd)
    try:
        module = importlib.import_module(module_name)
    finally:
        if added and cwd in sys.path:
            sys.path.remove(cwd)

    target = getattr(module, attr)
    if inspect.isclass(target) or (callable(target) and not isinstance(target, TaskExecutor)):
        target = target()
    if not isinstance(target, TaskExecutor):
        raise TypeError(f"{spec} is not a TaskExecutor")
    return target


def _format_step_line(key: str, state: StepState) -> str:
    line = f"- {key}: {state.status.value.upper()}"
    if state.attempts > 1:
        line += f" [{state.attempts} attempts]"
    if state.started_at or state.completed_at:
        line += f" ({state.started_at} -> {state.completed_at})"
    if state.skip_reason:
        line += f" {state.skip_reason}"
    if state.error:
        line += f" {state.error.error_type}: {state.error.message}"
    return line


def _format_instance_line(instance: WorkflowInstance) -> str:
    parent = f"\tparent={instance.parent_id}" if instance.parent_id else ""
    return (
        f"{instance.id}\t{instance.definition_id}@{instance.version}"
        f"\t{instance.status.value.upper()}{parent}"
    )
