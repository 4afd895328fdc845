"""Logging configuration for the MaBourse sync backend."""

from __future__ import annotations

import logging
import os
import sys
import time
from typing import Any

ROOT_LOGGER = "mabourse"


def setup_logging(level: int | str | None = None) -> logging.Logger:
    """Configure and return the application logger.

    The level defaults to the ``LOG_LEVEL`` environment variable (INFO when unset).
    """
    logger = logging.getLogger(ROOT_LOGGER)

    if logger.handlers:
        return logger

    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class LogContext:
    """Log the start, end and duration of an operation, tagged with key=value context.

    Exceptions are logged and re-raised.
    """

    def __init__(self, logger: logging.Logger, operation: str, **context: Any) -> None:
        self.logger = logger
        self.operation = operation
        self.context = context
        self._started = 0.0

    def _describe(self) -> str:
        if not self.context:
            return self.operation
        tags = " ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.operation} [{tags}]"

    def __enter__(self) -> "LogContext":
        self._started = time.perf_counter()
        self.logger.info(f"Starting {self._describe()}")
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> bool:
        elapsed_ms = (time.perf_counter() - self._started) * 1000
        if exc_type is not None:
            self.logger.error(
                f"Failed {self._describe()} after {elapsed_ms:.0f}ms: {exc_val}",
                exc_info=True,
            )
        else:
            self.logger.info(f"Completed {self._describe()} in {elapsed_ms:.0f}ms")
        return False


# Initialize default logger
logger = setup_logging()
