"""Logging setup for the task hub."""
from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from hub_config import _config_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        session_id = getattr(record, "session_id", None)
        if session_id:
            entry["session_id"] = session_id
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(
    level: str = "INFO",
    log_to_file: bool = False,
    log_to_console: bool = True,
    json_format: bool = False,
    log_dir: Optional[Path] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name for the root logger.
        log_to_file: Also write a rotating ``hub.log`` under ``log_dir``.
        log_to_console: Log to stderr.
        json_format: Use JSONFormatter instead of the plain text format.
        log_dir: Directory for log files; defaults to ``<config dir>/logs``.

    Returns:
        The configured root logger.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers.clear()

    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    if log_to_console:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    if log_to_file:
        directory = log_dir or (_config_dir() / "logs")
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            directory / "hub.log",
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # aiohttp.access is noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return root
