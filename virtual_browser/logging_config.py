"""
Logging setup.

Text output by default; VIRTUAL_BROWSER_LOG_JSON=1 switches to one JSON
object per line. Structured fields attached with ``*_with()`` or
``bind()`` appear as JSON keys or as trailing ``key=value`` pairs.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "apscheduler", "asyncio")


def _fields_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "fields", None) or {}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_fields_of(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain text with structured fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _fields_of(record)
        if not fields:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{line} | {pairs}"


class BoundLogger(logging.LoggerAdapter):
    """Logger adapter that stamps every record with fixed fields."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        extra["fields"] = {**self.extra, **extra.get("fields", {})}
        return msg, kwargs

    def debug_with(self, msg: str, **fields):
        self.debug(msg, extra={"fields": fields})

    def info_with(self, msg: str, **fields):
        self.info(msg, extra={"fields": fields})

    def bind(self, **fields) -> "BoundLogger":
        return BoundLogger(self.logger, {**self.extra, **fields})


class StructuredLogger(logging.Logger):
    def log_with(self, level: int, msg: str, **fields):
        if self.isEnabledFor(level):
            self._log(level, msg, (), extra={"fields": fields})

    def debug_with(self, msg: str, **fields):
        self.log_with(logging.DEBUG, msg, **fields)

    def info_with(self, msg: str, **fields):
        self.log_with(logging.INFO, msg, **fields)

    def warning_with(self, msg: str, **fields):
        self.log_with(logging.WARNING, msg, **fields)

    def error_with(self, msg: str, **fields):
        self.log_with(logging.ERROR, msg, **fields)

    def bind(self, **fields) -> BoundLogger:
        return BoundLogger(self, fields)


logging.setLoggerClass(StructuredLogger)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def setup_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger from arguments or VIRTUAL_BROWSER_LOG_* variables."""
    level = level or os.environ.get("VIRTUAL_BROWSER_LOG_LEVEL", "INFO")
    if json_format is None:
        json_format = _env_flag("VIRTUAL_BROWSER_LOG_JSON")
    log_file = log_file or os.environ.get("VIRTUAL_BROWSER_LOG_FILE")

    formatter = JSONFormatter() if json_format else KeyValueFormatter(TEXT_FORMAT, DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)
