"""Logging for rolloutctl.

Everything logs under the ``rolloutctl`` logger tree to stderr, so stdout
stays clean for command output. Reconciliation code binds the target, plan
and version onto a ``StructuredLogger`` and every message carries them as
``key=value`` pairs.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "rolloutctl"

# Libraries whose debug output drowns out reconciliation progress
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def number(self) -> int:
        return logging.getLevelName(self.value.upper())


_handler: logging.Handler | None = None


def _make_handler(rich_output: bool) -> logging.Handler:
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler


def setup_logging(
    level: LogLevel = LogLevel.WARNING,
    rich_output: bool = True,
) -> logging.Logger:
    """Send rolloutctl logs to stderr at the given level.

    Safe to call more than once; the previous handler is replaced.

    Args:
        level: The logging level
        rich_output: Use Rich formatting; plain lines otherwise

    Returns:
        The ``rolloutctl`` logger
    """
    global _handler

    logger = logging.getLogger(ROOT_LOGGER)
    if _handler is not None:
        logger.removeHandler(_handler)
        _handler.close()
    _handler = _make_handler(rich_output)
    logger.addHandler(_handler)
    logger.setLevel(level.number)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the ``rolloutctl`` tree (typically for ``__name__``)."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


class StructuredLogger:
    """Logger that appends bound and per-call context to each message."""

    def __init__(self, name: str):
        self._logger = get_logger(name)
        self._context: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        bound = StructuredLogger(self._logger.name)
        bound._context = {**self._context, **kwargs}
        return bound

    def _log(self, level: int, message: str, context: dict[str, Any], **log_kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self._context, **context}
        if merged:
            message = f"{message} [{' '.join(f'{k}={v}' for k, v in merged.items())}]"
        self._logger.log(level, message, **log_kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the active exception's traceback."""
        self._log(logging.ERROR, message, kwargs, exc_info=True)
