"""Logging setup for the uvmboot command line."""

from __future__ import annotations

import logging
import sys

LOGGER_NAME = "uvmboot"
LOG_FORMAT = "%(name)s %(levelname)s %(message)s"


def setup_logging(debug: bool = False, stream=None) -> logging.Logger:
    """Configure and return the ``uvmboot`` logger.

    Only the package logger is touched; the root logger keeps its level.
    Calling this again replaces the handler instead of stacking another.
    """
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG if debug else logging.INFO)
    log.propagate = False
    return log
