from __future__ import annotations

import re
from typing import Any, Mapping

import jinja2

from .errors import ValidationError
from .types import HostConfig

_JINJA_MARKER = re.compile(r"{[{%]")


def build_environment() -> jinja2.Environment:
    return jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True)


def host_context(host: HostConfig, extra: Mapping[str, Any] | None = None) -> dict[str, Any]:
    context: dict[str, Any] = dict(host.variables)
    context.setdefault("host_name", host.name)
    context.setdefault("host_address", host.address or host.name)
    if extra:
        context.update(extra)
    return context


def looks_like_template(text: str) -> bool:
    return bool(_JINJA_MARKER.search(text))


def render_args(
    args: Mapping[str, Any],
    context: Mapping[str, Any],
    env: jinja2.Environment | None = None,
) -> dict[str, Any]:
    """Render every templated string in ``args``, descending into lists and dicts.

    Keys starting with ``_`` are passed through untouched. Undefined names
    and template syntax errors raise ``ValidationError`` for the offending key.
    """
    env = env or build_environment()
    rendered: dict[str, Any] = {}
    for key, value in args.items():
        if key.startswith("_"):
            rendered[key] = value
            continue
        rendered[key] = _render_value(key, value, context, env)
    return rendered


def _render_value(key: str, value: Any, context: Mapping[str, Any], env: jinja2.Environment) -> Any:
    if isinstance(value, str):
        if not looks_like_template(value):
            return value
        try:
            return env.from_string(value).render(**context)
        except jinja2.UndefinedError as exc:
            raise ValidationError(key, value, f"undefined template variable: {exc.message}") from exc
        except jinja2.TemplateSyntaxError as exc:
            raise ValidationError(key, value, f"template syntax error: {exc.message}") from exc
    if isinstance(value, Mapping):
        return {k: _render_value(f"{key}.{k}", v, context, env) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_value(f"{key}[{i}]", v, context, env) for i, v in enumerate(value)]
    return value
