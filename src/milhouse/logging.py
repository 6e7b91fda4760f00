"""JSONL logging to ``.milhouse/milhouse.log`` with rotation (5MB, 3 backups)."""

from __future__ import annotations

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "milhouse.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_EXTRA_FIELDS = ("run_id", "task_id", "event", "duration_ms", "error")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(state_dir: Path, level: str | int = "INFO") -> logging.Logger:
    """Attach the rotating JSONL handler to the ``milhouse`` logger once per path."""
    logger = logging.getLogger("milhouse")
    log_path = state_dir / LOG_FILENAME
    target_filename = os.path.abspath(str(log_path))
    resolved_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    with _setup_lock:
        logger.setLevel(resolved_level)
        for handler in logger.handlers[:]:
            if not isinstance(handler, RotatingFileHandler):
                continue
            if handler.baseFilename == target_filename:
                return logger
            logger.removeHandler(handler)
            handler.close()

        state_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(log_path),
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
    return logger


def teardown_logging() -> None:
    logger = logging.getLogger("milhouse")
    with _setup_lock:
        for handler in logger.handlers[:]:
            if isinstance(handler, RotatingFileHandler):
                logger.removeHandler(handler)
                handler.close()
