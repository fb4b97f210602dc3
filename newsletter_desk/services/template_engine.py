"""Newsletter template rendering powered by Jinja2."""
from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).resolve().parents[1] / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_template(template_name: str, **context: Any) -> str:
    """Render a template file with the provided context."""

    template = _env.get_template(template_name)
    return template.render(**context)


def render_string(source: str, **context: Any) -> str:
    """Render an inline template, e.g. a plugin-supplied custom template."""

    return _env.from_string(source).render(**context)
