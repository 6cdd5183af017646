"""Logging setup for the command line.

Library modules only create loggers; handlers are attached here, once, by
the CLI entry point.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "fab_installer"


def setup_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Attach a rich handler to the package logger.

    Calling this again only updates the level.

    Args:
        level: Logging level name (DEBUG, INFO, ...).
        console: Console to log to; defaults to stderr.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level.upper())

    if any(isinstance(h, RichHandler) for h in logger.handlers):
        return

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False


__all__ = ["PACKAGE_LOGGER", "setup_logging"]
