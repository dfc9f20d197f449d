"""Logging setup for the analyzer."""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import LogSettings

ROOT_LOGGER = "image_analyzer"

# Attributes every LogRecord has; anything else came in through extra=
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including fields passed via ``extra=``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """Human-readable console format."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def setup_logging(settings: Optional[LogSettings] = None, console: bool = True) -> None:
    """
    Configure the package logger.

    Args:
        settings: Log directory, file, level and file format
        console: Also log human-readable records to stderr
    """
    settings = settings or LogSettings()
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(PlainFormatter())
        root_logger.addHandler(stream_handler)

    if settings.dir:
        os.makedirs(settings.dir, exist_ok=True)
        file_handler = logging.FileHandler(settings.path, encoding="utf-8")
        if settings.format == "json":
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(PlainFormatter())
        root_logger.addHandler(file_handler)
