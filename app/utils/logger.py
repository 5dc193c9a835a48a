# app/utils/logger.py
"""
Centralised logging configuration for the entire application.
Logs to console and to a rotating file in /logs/. Operator-facing events
(gate failures, invariant violations, settlement conflicts) are also written
to their own rotating file so they can be tailed separately.
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from app.config import settings

LOG_LEVEL = settings.LOG_LEVEL.upper()
LOG_DIR = settings.LOG_DIR or os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs"
)
OPERATOR_LOGGER = "parkgate.operator"

_configured = False


def _rotating(filename: str, fmt: logging.Formatter, level) -> RotatingFileHandler:
    # keeps last 10 × 5MB log files
    handler = RotatingFileHandler(
        filename=os.path.join(LOG_DIR, filename),
        maxBytes=5 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    return handler


def _configure_root_logger():
    global _configured
    if _configured:
        return
    _configured = True

    fmt = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setLevel(LOG_LEVEL)
    console.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    root.addHandler(console)

    if not settings.LOG_TO_FILE:
        return

    os.makedirs(LOG_DIR, exist_ok=True)
    root.addHandler(_rotating("parkgate.log", fmt, LOG_LEVEL))
    logging.getLogger(OPERATOR_LOGGER).addHandler(_rotating("operator.log", fmt, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger. Call this at the top of every module."""
    _configure_root_logger()
    return logging.getLogger(name)


def get_operator_logger() -> logging.Logger:
    """Logger for events that need a human at the gate or in the back office."""
    return get_logger(OPERATOR_LOGGER)
