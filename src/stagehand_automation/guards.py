"""Guard evaluation and parameter rendering with Jinja2.

Guards (``when``) are bare Jinja2 expressions such as
``pkg_result.changed and samba_enabled``. Parameters are rendered only when a
string contains template markup, so plain values pass through untouched.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

import jinja2
from jinja2 import meta

from .errors import GuardEvaluationError, UndefinedVariableError

TEMPLATE_RE = re.compile(r"{[{%]")
# exactly one expression and nothing around it
SINGLE_EXPR_RE = re.compile(r"^\{\{(?P<expr>(?:(?!\{\{|\}\}).)+)\}\}\Z", re.DOTALL)

_env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True)


def environment() -> jinja2.Environment:
    return _env


def referenced_names(expression: str) -> set[str]:
    """Top-level variable names an expression or template reads."""
    source = expression if TEMPLATE_RE.search(expression) else "{{ " + expression + " }}"
    try:
        return set(meta.find_undeclared_variables(_env.parse(source)))
    except jinja2.TemplateSyntaxError as exc:
        raise GuardEvaluationError(expression, f"syntax error: {exc.message}") from None


def references_in(value: Any) -> set[str]:
    """Names referenced by template markup anywhere inside ``value``."""
    if isinstance(value, str):
        return referenced_names(value) if TEMPLATE_RE.search(value) else set()
    if isinstance(value, Mapping):
        names: set[str] = set()
        for item in value.values():
            names |= references_in(item)
        return names
    if isinstance(value, (list, tuple)):
        names = set()
        for item in value:
            names |= references_in(item)
        return names
    return set()


def evaluate(expressions: Iterable[str], context: Mapping[str, Any]) -> bool:
    """True when every guard expression holds in ``context``."""
    for expression in expressions:
        try:
            compiled = _env.compile_expression(expression, undefined_to_none=False)
            value = compiled(**context)
        except jinja2.UndefinedError as exc:
            raise GuardEvaluationError(expression, exc.message or "undefined variable") from None
        except jinja2.TemplateSyntaxError as exc:
            raise GuardEvaluationError(expression, f"syntax error: {exc.message}") from None
        except (TypeError, ValueError, AttributeError) as exc:
            raise GuardEvaluationError(expression, str(exc)) from None
        if isinstance(value, jinja2.Undefined):
            raise GuardEvaluationError(expression, "undefined variable")
        if not value:
            return False
    return True


def render(value: Any, context: Mapping[str, Any]) -> Any:
    """Render template markup inside ``value`` recursively.

    A string that is a single ``{{ expr }}`` keeps the native type of the
    expression, so ``packages = "{{ pkgs }}"`` yields a list and
    ``uid = "{{ uid }}"`` an int. Mixed text renders to a string.
    """
    if isinstance(value, str):
        if not TEMPLATE_RE.search(value):
            return value
        single = SINGLE_EXPR_RE.match(value)
        try:
            if single:
                return _native(single.group("expr"), context)
            return _env.from_string(value).render(**context)
        except jinja2.UndefinedError as exc:
            raise UndefinedVariableError(f"cannot render '{value}': {exc.message}") from None
        except jinja2.TemplateSyntaxError as exc:
            raise UndefinedVariableError(f"cannot render '{value}': syntax error: {exc.message}") from None
    if isinstance(value, Mapping):
        return {k: render(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, context) for v in value]
    return value


def _native(expression: str, context: Mapping[str, Any]) -> Any:
    result = _env.compile_expression(expression, undefined_to_none=False)(**context)
    if isinstance(result, jinja2.Undefined):
        # raises UndefinedError naming the missing variable
        str(result)
    return result
