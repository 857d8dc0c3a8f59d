"""
Logging setup for campus_kb.

Modules log through ``logging.getLogger(__name__)``; applications call
``setup_logging()`` once at startup to attach a rich console handler.
"""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

from .config import ENV_LOG_LEVEL

ROOT_LOGGER = "campus_kb"


def setup_logging(level: str | None = None, *, console: Console | None = None) -> None:
    """Attach a ``RichHandler`` to the package logger.

    Calling it again replaces the previous handler instead of stacking them.
    """
    if level is None:
        level = os.getenv(ENV_LOG_LEVEL, "INFO").upper()
    log_level = getattr(logging, level, logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(log_level)
