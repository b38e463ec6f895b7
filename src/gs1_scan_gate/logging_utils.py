"""Logging setup for the scan gate CLI and embedded services."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_LEVEL_ENV = "SCAN_GATE_LOG_LEVEL"

_QUIET_LOGGERS = ("psycopg", "psycopg.pool")


def resolve_level(value: str | int | None, default: int = logging.INFO) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    if isinstance(level, int):
        return level
    raise ValueError(f"LOG_LEVEL_INVALID: {value}")


def configure_logging(level: str | int | None = None, log_paths: Iterable[str] | None = None) -> int:
    """Install console and file handlers once and return the effective level.

    ``SCAN_GATE_LOG_LEVEL`` takes precedence over ``level``. When the root
    logger already has handlers (embedding app, pytest) they are left alone.
    """
    resolved = resolve_level(os.getenv(LOG_LEVEL_ENV) or level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
    root = logging.getLogger()
    if root.handlers:
        return resolved
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    for entry in log_paths or ():
        path = Path(entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt=LOG_DATEFMT, handlers=handlers)
    return resolved
