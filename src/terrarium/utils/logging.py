"""Logging configuration for the Terrarium command line."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any

__all__ = ["setup_logging", "get_log_path"]

_LOG_FILENAME = "terrarium.log"
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
# watchfiles reports every raw batch at DEBUG.
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "watchfiles")
_state: dict[str, Path | None] = {"log_path": None}


def default_log_dir() -> Path:
    override = os.environ.get("TERRARIUM_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".terrarium" / "logs"


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route all records to a rotating log file and, optionally, to stderr.

    Repeated calls are no-ops unless ``force`` is set, which lets ``--debug``
    or the ``debug_logging`` setting raise the level after startup.
    """

    current = _state["log_path"]
    if current is not None and not force:
        return current

    target_dir = Path(log_dir).expanduser() if log_dir else default_log_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILENAME

    quiet_level = max(level, logging.WARNING)
    handlers: dict[str, dict[str, Any]] = {
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(log_path),
            "maxBytes": max_bytes,
            "backupCount": backup_count,
            "encoding": "utf-8",
            "formatter": "detailed",
            "level": level,
        },
    }
    if console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "terse",
            "level": level,
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "detailed": {"format": _FILE_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
                "terse": {"format": _CONSOLE_FORMAT},
            },
            "handlers": handlers,
            "loggers": {name: {"level": quiet_level} for name in _QUIET_LOGGERS},
            "root": {"level": level, "handlers": list(handlers)},
        }
    )
    logging.captureWarnings(True)

    _state["log_path"] = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, if logging has been configured."""

    return _state["log_path"]
