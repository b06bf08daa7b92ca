"""Jinja2 helpers shared by the variable resolver and the task runner.

Strings are templates; mappings and lists are walked recursively. A string
that consists of a single ``{{ expression }}`` renders to the native value of
the expression so lists and mappings survive interpolation.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

import jinja2
from jinja2 import meta

_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)
_SINGLE_EXPR_RE = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\}\}|\{\{).)*)\}\}\s*$", re.DOTALL)
_TEMPLATE_RE = re.compile(r"{[{%]")


class TemplateError(ValueError):
    """A template or condition expression is malformed."""


def is_template(value: Any) -> bool:
    return isinstance(value, str) and bool(_TEMPLATE_RE.search(value))


def references(value: Any) -> set[str]:
    """Return every top-level variable name referenced by ``value``."""

    if isinstance(value, dict):
        names: set[str] = set()
        for item in value.values():
            names |= references(item)
        return names
    if isinstance(value, (list, tuple)):
        names = set()
        for item in value:
            names |= references(item)
        return names
    if not is_template(value):
        return set()
    return _parse(value)


def expression_references(expression: str) -> set[str]:
    return _parse("{{ (" + expression + ") }}")


def render(value: Any, context: Mapping[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, context) for v in value]
    if isinstance(value, tuple):
        return tuple(render(v, context) for v in value)
    if not is_template(value):
        return value
    match = _SINGLE_EXPR_RE.match(value)
    try:
        if not match:
            return _ENV.from_string(value).render(**context)
        expr = match.group("expr")
        result = _ENV.compile_expression(expr, undefined_to_none=False)(**context)
    except jinja2.TemplateSyntaxError as exc:
        raise TemplateError(f"invalid template {value!r}: {exc.message}") from None
    if isinstance(result, jinja2.Undefined):
        raise jinja2.UndefinedError(f"'{expr.strip()}' is undefined")
    return result


def evaluate(expression: str, context: Mapping[str, Any]) -> bool:
    try:
        compiled = _ENV.compile_expression(expression, undefined_to_none=False)
    except jinja2.TemplateSyntaxError as exc:
        raise TemplateError(f"invalid condition {expression!r}: {exc.message}") from None
    return bool(compiled(**context))


def _parse(source: str) -> set[str]:
    try:
        ast = _ENV.parse(source)
    except jinja2.TemplateSyntaxError as exc:
        raise TemplateError(f"invalid template {source!r}: {exc.message}") from None
    return set(meta.find_undeclared_variables(ast)) - set(_ENV.globals)
