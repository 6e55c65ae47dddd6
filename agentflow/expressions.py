"""Binding resolution and predicate evaluation against a workflow scope.

The scope is a plain mapping: ``inputs`` holds the workflow inputs, every
completed step contributes its outputs under its id (and ``outputVar``), and
loops add ``loop``. References use ``${path.to.value}``; dotted segments
index into mappings and, when numeric, into lists. Missing values resolve
to ``None``.

Predicates are Jinja2 expressions run in a sandboxed environment. Anything
richer can be passed as a Python callable that receives the scope.
"""

from __future__ import annotations

import functools
import json
import logging
import re
from typing import Any, Iterable, Mapping

from jinja2 import TemplateError, TemplateSyntaxError, meta
from jinja2.sandbox import SandboxedEnvironment

from .contracts import InputBinding
from .errors import ExpressionError

logger = logging.getLogger(__name__)

_REF_RE = re.compile(r"\$\{\s*([^}]+?)\s*\}")


def lookup(path: str, scope: Mapping[str, Any]) -> Any:
    """Resolve a dotted ``path`` inside ``scope``."""
    current: Any = scope
    for part in path.strip().split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return None
        else:
            return None
    return current


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve_value(value: Any, scope: Mapping[str, Any]) -> Any:
    """Resolve references inside ``value``.

    A string that is exactly one reference yields the referenced value with
    its type preserved; references embedded in longer strings are
    interpolated as text. Mappings and sequences are resolved recursively.
    """
    if isinstance(value, str):
        match = _REF_RE.fullmatch(value.strip())
        if match:
            return lookup(match.group(1), scope)
        if "${" in value:
            return _REF_RE.sub(lambda m: _to_text(lookup(m.group(1), scope)), value)
        return value
    if isinstance(value, Mapping):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, scope) for item in value]
    return value


def resolve_bindings(
    bindings: Iterable[InputBinding], scope: Mapping[str, Any]
) -> dict[str, Any]:
    """Build a task input mapping from its declared bindings."""
    return {binding.name: resolve_value(binding.value, scope) for binding in bindings}


# ----------------------------------------------------------------------
# Predicates


class _ScopeEnvironment(SandboxedEnvironment):
    """Sandbox where ``a.b`` reads mapping keys and missing values are ``None``."""

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping):
            return obj.get(attribute)
        if obj is None:
            return None
        return super().getattr(obj, attribute)


_ENVIRONMENT = _ScopeEnvironment()
_ENVIRONMENT.globals["null"] = None


def _translate(expression: str) -> tuple[str, list[str]]:
    """Replace each ``${path}`` with a variable name the template can see."""
    paths: list[str] = []

    def replace(match: re.Match) -> str:
        paths.append(match.group(1))
        return f"_ref{len(paths) - 1}"

    return _REF_RE.sub(replace, expression), paths


@functools.lru_cache(maxsize=256)
def _compile(text: str) -> tuple[Any, frozenset[str]]:
    if not text.strip():
        raise ExpressionError("Empty expression")
    try:
        compiled = _ENVIRONMENT.compile_expression(text)
        names = meta.find_undeclared_variables(_ENVIRONMENT.parse(f"{{{{ {text} }}}}"))
    except TemplateSyntaxError as exc:
        raise ExpressionError(f"Invalid expression {text!r}: {exc}") from exc
    return compiled, frozenset(names)


def parse_predicate(expression: str) -> tuple[Any, list[str]]:
    """Compile ``expression``; returns the template and its ``${}`` paths."""
    text, paths = _translate(expression)
    compiled, _ = _compile(text)
    return compiled, paths


def evaluate_predicate(expression: Any, scope: Mapping[str, Any]) -> bool:
    """Evaluate a predicate given as a bool, a callable or an expression string.

    Strings are Jinja2 expressions evaluated in a sandbox: comparisons,
    ``in``/``not in``, ``and``/``or``/``not``, parentheses and literals
    (``true``, ``false``, ``null``). ``${path}`` references and bare dotted
    names both read from ``scope``.
    """
    if expression is None:
        return False
    if isinstance(expression, bool):
        return expression
    if callable(expression):
        return bool(expression(scope))
    if isinstance(expression, (int, float)):
        return bool(expression)
    if not isinstance(expression, str):
        raise ExpressionError(f"Unsupported predicate type: {type(expression).__name__}")

    text, paths = _translate(expression)
    compiled, names = _compile(text)
    variables = {name: scope.get(name) for name in names}
    variables.update({f"_ref{index}": lookup(path, scope) for index, path in enumerate(paths)})
    try:
        result = bool(compiled(variables))
    except TypeError as exc:
        raise ExpressionError(f"Cannot compare values in {expression!r}: {exc}") from exc
    except (TemplateError, ValueError, ArithmeticError) as exc:
        raise ExpressionError(f"Cannot evaluate {expression!r}: {exc}") from exc
    logger.debug(f"Predicate {expression!r} evaluated to {result}")
    return result


def check_predicate(expression: Any) -> str | None:
    """Return a parse error message for ``expression`` or ``None`` when valid."""
    if not isinstance(expression, str):
        return None
    try:
        parse_predicate(expression)
    except ExpressionError as exc:
        return str(exc)
    return None
