"""
mistral-decode :: Structured Logging

Logging for load, prefill and decode events.
Human-readable output on the console by default, JSON lines
for machine consumption (and always for log files).

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Optional


ROOT_LOGGER = "mistral_decode"


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "session_id"):
            log_entry["session_id"] = record.session_id
        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class HumanFormatter(logging.Formatter):
    """Human-readable formatter for interactive use."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = self.formatTime(record, "%H:%M:%S")
        prefix = f"{color}{ts} [{record.levelname:>7}]{self.RESET}"
        msg = f"{prefix} {record.getMessage()}"
        if hasattr(record, "session_id"):
            msg += f" [session={record.session_id}]"
        extra = getattr(record, "extra_data", None)
        if extra:
            msg += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for mistral-decode.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format on the console
        log_file: Optional file path for log output
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = JSONFormatter() if json_output else HumanFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())  # Always JSON for files
        logger.addHandler(fh)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


class SessionLogger:
    """Logger bound to one generation session."""

    def __init__(self, session_id: int, logger: Optional[logging.Logger] = None):
        self.session_id = session_id
        self.logger = logger or get_logger()
        self.start_time = time.perf_counter()

    def _log(self, level: int, msg: str, exc_info=None, **kwargs):
        self.logger.log(
            level, msg,
            exc_info=exc_info,
            extra={"session_id": self.session_id, "extra_data": kwargs},
        )

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, exc_info=None, **kwargs):
        self._log(logging.ERROR, msg, exc_info=exc_info, **kwargs)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
