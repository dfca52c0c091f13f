"""
backend/logging_config.py

One-call logging setup for hosts embedding the engine.
"""

from __future__ import annotations

import logging

from .config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: str | None = None) -> None:
    """Apply the standard format at `level` (defaults to settings.LOG_LEVEL)."""
    name = (level or settings.LOG_LEVEL).upper()
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level {name!r}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, datefmt=DATE_FORMAT, force=True)
    logging.getLogger("ipdrwatch").setLevel(numeric)
