"""
vestledger - Structured Logging

JSON log output for audit tooling plus a human-readable text log:
- UTC timestamps
- Correlation IDs shared by every record of one CLI invocation
- ``extra={"event": ...}`` fields from engine modules copied into the record
- Daily rotation
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Optional

correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "correlation_id"}

ROOT_LOGGER_NAME = "vestledger"


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Features:
    - UTC timestamps
    - Correlation ID support
    - Fields passed through ``extra`` are merged into the entry
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        corr_id = correlation_id.get()
        if corr_id:
            log_entry["correlation_id"] = corr_id

        log_entry["thread"] = {"id": threading.get_ident(), "name": threading.current_thread().name}

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class CorrelationIDFilter(logging.Filter):
    """Filter to add correlation ID to log records"""

    def filter(self, record):
        corr_id = correlation_id.get()
        record.correlation_id = corr_id if corr_id else "NO-ID"
        return True


class LogContext:
    """
    Context manager for correlation ID tracking

    Usage:
        with LogContext() as ctx:
            logger.info("This log will have a correlation ID")
    """

    def __init__(self, custom_id: str | None = None):
        self.correlation_id = custom_id or self._generate_correlation_id()
        self.token = None

    def _generate_correlation_id(self) -> str:
        hash_input = str(time.time()).encode() + str(threading.get_ident()).encode() + os.urandom(8)
        return hashlib.sha256(hash_input).hexdigest()[:16]

    def __enter__(self):
        self.token = correlation_id.set(self.correlation_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        correlation_id.reset(self.token)


def truncate_address(address: str) -> str:
    """Shorten an address for log output."""
    if not address:
        return "UNKNOWN"
    return address[:10]


def configure_logging(
    log_dir: Path | None = None,
    log_level: str = "INFO",
    json_logs: bool = False,
    console_level: str | None = None,
    backup_count: int = 30,
) -> logging.Logger:
    """
    Configure the ``vestledger`` logger tree.

    A console handler is always attached. When ``log_dir`` is given, a JSON
    file log (``vestledger.json.log``) and a text file log
    (``vestledger.log``) are added, both rotated at UTC midnight.

    Args:
        log_dir: Directory for log files (no file logging when None)
        log_level: Minimum level name
        json_logs: Emit JSON on the console instead of text
        console_level: Separate minimum level for the console handler
        backup_count: Rotated files to keep

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Prevent duplicate handlers on repeated configuration
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    text_formatter = logging.Formatter(
        "[%(asctime)s UTC] %(levelname)-8s [%(correlation_id)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    text_formatter.converter = time.gmtime

    console = logging.StreamHandler()
    console.addFilter(CorrelationIDFilter())
    if console_level:
        console.setLevel(getattr(logging, console_level.upper(), logging.WARNING))
    console.setFormatter(JSONFormatter() if json_logs else text_formatter)
    logger.addHandler(console)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        json_handler = TimedRotatingFileHandler(
            log_dir / "vestledger.json.log",
            when="midnight",
            interval=1,
            backupCount=backup_count,
            encoding="utf-8",
            utc=True,
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

        text_handler = TimedRotatingFileHandler(
            log_dir / "vestledger.log",
            when="midnight",
            interval=1,
            backupCount=backup_count,
            encoding="utf-8",
            utc=True,
        )
        text_handler.addFilter(CorrelationIDFilter())
        text_handler.setFormatter(text_formatter)
        logger.addHandler(text_handler)

    return logger
