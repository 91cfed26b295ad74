"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from invcore import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LOG_PATH: Optional[Path] = None


def resolve_level(level: Union[int, str, None]) -> int:
    """Return a numeric logging level for ``level`` (name or number)."""

    if level is None or level == "":
        level = os.getenv("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    text = str(level).strip().upper()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Union[int, str, None] = None, *, log_path: Optional[Path] = None) -> Path:
    """Configure the root logger to write to the log file and to stderr.

    Parameters
    ----------
    level:
        Minimum level for the root logger, as a number or a level name.
        Defaults to the ``LOG_LEVEL`` environment variable, then ``INFO``.
    log_path:
        Log file location; defaults to ``inventory.log`` in the data directory.

    Returns
    -------
    pathlib.Path
        The path to the log file.

    Calling this more than once only adjusts the level.
    """

    global _LOG_PATH

    numeric_level = resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if _LOG_PATH is not None:
        return _LOG_PATH

    target = Path(log_path).resolve() if log_path else app_paths.data_path("logs", "inventory.log")
    target.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT)
    already_configured = any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(target)
        for handler in root_logger.handlers
    )
    if not already_configured:
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    _LOG_PATH = target
    root_logger.debug("Logging configured. Writing to %s", target)
    return target


def get_log_path() -> Path:
    """Return the path to the log file, configuring logging if needed."""

    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path", "resolve_level"]
