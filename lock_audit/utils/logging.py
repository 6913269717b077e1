"""Logging utilities for lockaudit."""

import logging
from functools import lru_cache
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

ROOT_LOGGER = "lock_audit"

LOG_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "red",
    "critical": "red bold",
    "debug": "dim",
})


@lru_cache(maxsize=None)
def _root_logger() -> logging.Logger:
    """Return the ``lock_audit`` logger, installing the stderr handler once.

    stdout is reserved for reports, so all records go to stderr.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    handler = RichHandler(
        console=Console(stderr=True, theme=LOG_THEME),
        show_time=True,
        show_path=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(fmt="%(name)s: %(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.WARNING)
    return logger


class LockAuditLogger:
    """Named child of the ``lock_audit`` logger.

    Keyword arguments passed to the level methods are attached to the record
    as ``extra`` fields.
    """

    def __init__(self, name: str) -> None:
        _root_logger()
        self.logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")

    def log(self, level: int, msg: str, **kwargs: Any) -> None:
        self.logger.log(level, msg, extra=kwargs)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, **kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self.log(logging.CRITICAL, msg, **kwargs)


def setup_logging(level: int = logging.WARNING, verbose: bool = False) -> None:
    """Set the level of every lockaudit logger.

    Args:
        level: Logging level
        verbose: Enable debug logging, overriding ``level``
    """
    _root_logger().setLevel(logging.DEBUG if verbose else level)

    # Third-party loggers stay quiet even in verbose mode
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> LockAuditLogger:
    """Get a lockaudit logger instance.

    Args:
        name: Logger name, appended to the ``lock_audit`` namespace

    Returns:
        Logger wrapper
    """
    return LockAuditLogger(name)
