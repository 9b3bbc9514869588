"""
Logging helpers for codebox.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

_LOGGER_NAME = "codebox"


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under ``codebox``."""
    if name == _LOGGER_NAME or name.startswith(f"{_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """
    Configure the ``codebox`` logger with a Rich handler on stderr.

    Args:
        verbose: Log INFO messages
        debug: Log DEBUG messages (implies verbose)

    Returns:
        The configured package logger
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
