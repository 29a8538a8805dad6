"""Logging setup for the docsift CLI."""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "docsift"


def setup_logging(level: str | int = "INFO", console: Console | None = None) -> logging.Logger:
    """Attach a rich handler to the package logger.

    Library modules only call ``logging.getLogger(__name__)``; handlers are
    installed here so embedding docsift in another app stays quiet by default.
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Avoid duplicate handlers when called more than once
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(level if isinstance(level, int) else level.upper())
    logger.propagate = False
    return logger
