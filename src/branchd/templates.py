"""Rendering of the bash scripts shipped under ``branchd/scripts``.

Scripts are jinja2 templates.  Free-form values (connection strings,
passwords, SQL) go through the ``shquote`` filter; names are validated by
callers before rendering.
"""

import shlex
from functools import lru_cache
from typing import Any

from jinja2 import Environment, PackageLoader, StrictUndefined


@lru_cache
def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("branchd", "scripts"),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["shquote"] = lambda value: shlex.quote(str(value))
    return env


def render_script(template_name: str, **params: Any) -> str:
    """Render a script template by file name.

    Args:
        template_name: File under ``branchd/scripts`` (e.g.
            ``"logical_restore.sh.j2"``).
        **params: Template variables.

    Returns:
        Rendered script source.

    Raises:
        jinja2.UndefinedError: If the template references a missing
            variable.
    """
    return _environment().get_template(template_name).render(**params)
