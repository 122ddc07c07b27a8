"""Logging helpers for the callable engine."""

from __future__ import annotations

import logging
import sys

_LOGGER_NAME = "callable_engine"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return the library logger, or a child of it when ``name`` is given."""
    if name:
        if name.startswith(f"{_LOGGER_NAME}.") or name == _LOGGER_NAME:
            return logging.getLogger(name)
        return logging.getLogger(f"{_LOGGER_NAME}.{name}")
    return logging.getLogger(_LOGGER_NAME)


def setup_logging(
    level: int = logging.INFO,
    format_str: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
) -> None:
    """Attach a stdout handler to the library logger.

    Meant for applications and scripts; the library itself never calls it.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    if logger.handlers and not all(isinstance(h, logging.NullHandler) for h in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(format_str))
    logger.addHandler(handler)
    logger.setLevel(level)


logging.getLogger(_LOGGER_NAME).addHandler(logging.NullHandler())
