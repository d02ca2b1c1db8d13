"""
Structured logging utilities for setbreak.

JSON-formatted logging for log files and long unattended runs,
human-readable colored logging for the terminal.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


class JSONFormatter(logging.Formatter):
    """Formatter that outputs log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Track context attached by TrackLoggerAdapter
        for key in ("track_id", "stage", "chunk"):
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)

        return json.dumps(log_obj, default=str)


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to log levels for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # Format a copy so other handlers don't see the escape codes
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, "")
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[str] = None,
    max_bytes: int = 10485760,
    backup_count: int = 5,
    console_enabled: bool = True,
    colored: bool = True,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Console output format ("json" or "text")
        log_file: Optional file path for log output (always JSON)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        console_enabled: Whether to log to console
        colored: Whether to use colored output (text format only)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        datefmt = "%Y-%m-%d %H:%M:%S"
        if colored and console_enabled and sys.stderr.isatty():
            formatter = ColoredFormatter(fmt, datefmt)
        else:
            formatter = logging.Formatter(fmt, datefmt)

    if console_enabled:
        # stderr keeps stdout free for the progress bar and summaries
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    # numba and audioread are chatty at DEBUG
    for noisy in ("numba", "audioread"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class TrackLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps every message with track context.

    Example:
        log = TrackLoggerAdapter(logger, {"track_id": 42, "stage": "decode"})
        log.warning("decode failed")
        # text:  [track 42/decode] decode failed
        # json:  {"message": "...", "track_id": 42, "stage": "decode"}
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        stage = self.extra.get("stage")
        prefix = f"[track {self.extra.get('track_id')}"
        prefix += f"/{stage}] " if stage else "] "
        return prefix + msg, kwargs


def track_logger(name: str, track_id: int, stage: Optional[str] = None) -> TrackLoggerAdapter:
    """Create a logger that includes track context in all messages."""
    context: Dict[str, Any] = {"track_id": track_id}
    if stage:
        context["stage"] = stage
    return TrackLoggerAdapter(get_logger(name), context)
