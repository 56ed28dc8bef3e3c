#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Logging for Vidrich.

Records are emitted as one JSON object per line (or a compact text line for
local runs). Context passed as keyword arguments travels in `record.data`,
and credentials that leak into messages (API keys in Google request URIs,
bearer tokens) are masked before any handler sees them.
"""

import json
import logging
import logging.handlers
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

LOG_FILE = "vidrich_backend.log"
SERVICE_NAME = "vidrich"

# Loggers that are chatty at INFO (one line per HTTP request or discovery lookup)
NOISY_LOGGERS = ("httpx", "httpcore", "googleapiclient.discovery", "googleapiclient.discovery_cache")

SECRET_PATTERNS = (
    re.compile(r"(?<=[?&]key=)[^&\s\"']+"),
    re.compile(r"(?<=Bearer )[A-Za-z0-9._\-]+"),
    re.compile(r"AIza[0-9A-Za-z_\-]{35}"),
    re.compile(r"sk-or-[A-Za-z0-9\-]{8,}"),
)
MASK = "***"


def redact(text: str) -> str:
    """Mask API keys and tokens in a log message."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(MASK, text)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites the message of every record with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    `request_id` is lifted to the top level so a batch can be followed with a
    single filter; other context fields go under `context`.
    """

    def format(self, record: logging.LogRecord) -> str:
        context: Dict[str, Any] = dict(getattr(record, "data", None) or {})
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "where": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        request_id = context.pop("request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = {
                "type": record.exc_info[0].__name__,
                "detail": redact(str(record.exc_info[1])),
                "traceback": redact(self.formatException(record.exc_info)),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable single-line format: the message followed by key=value context."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "data", None) or {}
        if context:
            line += " | " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


class StructuredLogger:
    """Thin wrapper over `logging.getLogger` taking context as keyword arguments.

    Example:
        logger = StructuredLogger(__name__)
        logger.info("Batch done", succeeded=48, failed=2)
        req_logger = logger.bind(request_id="1a2b3c4d")
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.name = name
        self.logger = logging.getLogger(name)
        self.context = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a logger that adds `context` to every record (e.g. a request id)."""
        return StructuredLogger(self.name, {**self.context, **context})

    def log(self, level: int, message: str, exc_info: Any = None, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(level, message, exc_info=exc_info, extra={"data": {**self.context, **fields}})

    def debug(self, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, exc_info: Any = True, **fields: Any) -> None:
        """Errors carry the active traceback unless exc_info=False."""
        self.log(logging.ERROR, message, exc_info=exc_info, **fields)

    def critical(self, message: str, exc_info: Any = True, **fields: Any) -> None:
        self.log(logging.CRITICAL, message, exc_info=exc_info, **fields)


def setup_logging(log_level_console: int = logging.INFO, log_level_file: int = logging.DEBUG,
                  structured: bool = True, log_file: Optional[str] = LOG_FILE,
                  quiet_loggers: Iterable[str] = NOISY_LOGGERS) -> None:
    """Install the console and rotating-file handlers on the root logger.

    Args:
        log_level_console: Level for stdout.
        log_level_file: Level for the log file.
        structured: JSON lines when True, ConsoleFormatter otherwise (file stays JSON).
        log_file: Path of the rotating file (5 MB x 3); None disables it.
        quiet_loggers: Third-party loggers capped at WARNING.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    redactor = RedactingFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter() if structured else ConsoleFormatter())
    console_handler.setLevel(log_level_console)
    console_handler.addFilter(redactor)
    root_logger.addHandler(console_handler)

    levels = [log_level_console]
    if log_file:
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
            )
        except OSError as e:
            print(f"Warning: Could not create log file '{log_file}': {e}", file=sys.stderr)
        else:
            file_handler.setFormatter(JSONFormatter())
            file_handler.setLevel(log_level_file)
            file_handler.addFilter(redactor)
            root_logger.addHandler(file_handler)
            levels.append(log_level_file)

    root_logger.setLevel(min(levels))
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    StructuredLogger(__name__).info(
        "Logging configured",
        console_level=logging.getLevelName(log_level_console),
        log_file=log_file,
        structured=structured
    )


def _level_from_env(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip().upper()
    level = logging.getLevelName(value) if value else default
    return level if isinstance(level, int) else default


def setup_logging_from_env() -> None:
    """setup_logging() driven by LOG_LEVEL_CONSOLE, LOG_LEVEL_FILE, LOG_STRUCTURED and LOG_FILE."""
    log_file = os.environ.get("LOG_FILE", LOG_FILE)
    setup_logging(
        log_level_console=_level_from_env("LOG_LEVEL_CONSOLE", logging.INFO),
        log_level_file=_level_from_env("LOG_LEVEL_FILE", logging.DEBUG),
        structured=os.environ.get("LOG_STRUCTURED", "true").lower() in ("true", "1", "yes"),
        log_file=log_file or None,
    )
