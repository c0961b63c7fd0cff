import json
import shlex
from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined


def _shquote(value: Any) -> str:
    return shlex.quote(str(value))


def _shell_dquote(value: Any) -> str:
    """Double-quote for the shell, leaving ``$VAR`` references to expand."""
    if not isinstance(value, str):
        value = json.dumps(dict(value))
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("`", "\\`")
    return f'"{escaped}"'


templates = Environment(
    loader=PackageLoader("farmrun", "templates"),
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)
templates.filters["shquote"] = _shquote
templates.filters["shell_dquote"] = _shell_dquote
