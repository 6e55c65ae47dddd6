"""Load workflow definitions from YAML, JSON or plain mappings."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .contracts import WorkflowDefinition
from .errors import ValidationError

logger = logging.getLogger(__name__)

DefinitionSource = Union[str, Path, Mapping[str, Any], WorkflowDefinition]

_FILE_SUFFIXES = (".yaml", ".yml", ".json")


def _looks_like_path(source: str) -> bool:
    return "\n" not in source and (
        source.endswith(_FILE_SUFFIXES) or os.path.exists(source)
    )


def _format_pydantic_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"])
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)


def load_definition(source: DefinitionSource) -> WorkflowDefinition:
    """Build a :class:`WorkflowDefinition` from ``source``.

    Args:
        source: A file path, a YAML or JSON document, a mapping, or an
            already-built definition (returned unchanged).

    Raises:
        ValidationError: The document cannot be parsed or does not match the
            definition schema.
    """
    if isinstance(source, WorkflowDefinition):
        return source

    if isinstance(source, Path) or (isinstance(source, str) and _looks_like_path(source)):
        path = Path(source)
        if not path.exists():
            raise ValidationError(f"Workflow file not found: {path}")
        logger.debug(f"Loading workflow definition from {path}")
        source = path.read_text(encoding="utf-8")

    if isinstance(source, str):
        try:
            data = yaml.safe_load(source)
        except yaml.YAMLError as exc:
            raise ValidationError(f"Workflow document is not valid YAML: {exc}") from exc
    else:
        data = source

    if not isinstance(data, Mapping):
        raise ValidationError("Workflow document must be a mapping")

    try:
        return WorkflowDefinition.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid workflow definition: {_format_pydantic_error(exc)}"
        ) from exc


def dump_definition(definition: WorkflowDefinition) -> dict[str, Any]:
    """Return the document form of ``definition`` using its camelCase keys."""
    return definition.model_dump(by_alias=True, exclude_none=True)
