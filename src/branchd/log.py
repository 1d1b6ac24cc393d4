"""Logging setup for the branchd CLI, worker and scheduler.

Library modules only create ``logging.getLogger(__name__)`` loggers; the
entry points call ``configure_logging`` once to attach a rich handler.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Attach a ``RichHandler`` to the root logger.

    Args:
        level: Log level name (``DEBUG``, ``INFO``, ...).
        console: Console to render on.  Defaults to stderr.
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # asyncpg/sqlalchemy are chatty at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
