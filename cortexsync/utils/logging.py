"""Logging configuration for cortexsync.

Environment Variables:
    CORTEXSYNC_LOG_LEVEL: Level name for the cortexsync logger (default: WARNING)
    CORTEXSYNC_LOG_FILE: Optional path of a file receiving DEBUG output
"""

import logging
import os
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "cortexsync"
DEFAULT_LEVEL = "WARNING"


def resolve_level(verbose: bool = False) -> int:
    """Log level from --verbose or the environment."""
    if verbose:
        return logging.DEBUG
    name = os.environ.get("CORTEXSYNC_LOG_LEVEL", DEFAULT_LEVEL).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(verbose: bool = False, console: Console | None = None) -> logging.Logger:
    """Configure the cortexsync logger hierarchy.

    Log records go to stderr through rich so they do not mix with command
    output. Calling this again replaces the previous handlers.

    Args:
        verbose: Force DEBUG level
        console: Console to render records on (stderr console by default)

    Returns:
        The package logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    level = resolve_level(verbose)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=verbose,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    logger.addHandler(handler)

    log_file = os.environ.get("CORTEXSYNC_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] %(name)s %(levelname)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
        level = logging.DEBUG

    logger.setLevel(level)
    return logger
