"""
Logging setup for the import service.

Modules log through ``logging.getLogger(__name__)``. ``configure_logging``
routes all of them to one stdout stream; run ids, batch progress and row
counts appear in the messages themselves, so the line format stays plain.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Dict, Optional


_is_configured = False

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Libraries that log every statement or multipart chunk at INFO.
THIRD_PARTY_LEVELS: Dict[str, str] = {
    "sqlalchemy.engine": "WARNING",
    "multipart": "WARNING",
    "python_multipart": "WARNING",
}


def build_logging_config(level: str) -> dict:
    """Return the ``dictConfig`` payload for ``level``."""
    loggers = {name: {"level": lib_level} for name, lib_level in THIRD_PARTY_LEVELS.items()}
    loggers["app"] = {"level": level}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "standard",
                "level": level,
            }
        },
        "loggers": loggers,
        "root": {"handlers": ["stdout"], "level": level},
    }


def configure_logging(level: Optional[str] = None, debug: bool = False) -> None:
    """
    Install the console handler once per process.

    Args:
        level: Log level name (e.g. "DEBUG", "INFO"); defaults to INFO.
        debug: Force DEBUG regardless of ``level``.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = "DEBUG" if debug else (level or "INFO").upper()
    dictConfig(build_logging_config(log_level))
    _is_configured = True
