"""
Centralized logging configuration for Autoscript.

Supports traditional text logging (console plus an optional run log file) and
structured JSON logging with a per-session correlation ID.

Usage:
    from autoscript.logging_config import configure_logging, correlation_id_var

    configure_logging(run_id="repair-42")
    correlation_id_var.set("session-abc")

Environment Variables:
    AUTOSCRIPT_LOG_DIR - Override default log directory
    AUTOSCRIPT_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

# Repair session ID, attached to every structured record
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "message",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter carrying the repair session correlation ID.

    Extra attributes passed through ``logger.info(..., extra={...})`` are
    emitted as top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": correlation_id_var.get(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_structured_logging(log_level: str = "INFO") -> None:
    """Configure structured JSON logging on the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    handler.setLevel(getattr(logging, log_level.upper()))

    root_logger.addHandler(handler)


def get_default_log_dir(workspace: Optional[Path] = None) -> Path:
    """
    Get the default log directory.

    Args:
        workspace: Base directory (defaults to current working directory)

    Returns:
        Log directory path
    """
    if "AUTOSCRIPT_LOG_DIR" in os.environ:
        return Path(os.environ["AUTOSCRIPT_LOG_DIR"])

    if workspace is None:
        workspace = Path.cwd()
    return workspace / "logs"


def configure_logging(
    run_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    log_level: Optional[str] = None,
    log_to_console: bool = True,
    log_to_file: bool = False,
) -> logging.Logger:
    """
    Configure the ``autoscript`` logger.

    Args:
        run_id: Run identifier (used in log filename)
        workspace: Base directory for the default log dir
        log_dir: Log directory (overrides default)
        log_level: Log level name; falls back to AUTOSCRIPT_LOG_LEVEL, then INFO
        log_to_console: Whether to log to stderr
        log_to_file: Whether to also write a run log file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("autoscript")
    logger.handlers.clear()

    if log_level is None:
        log_level = os.environ.get("AUTOSCRIPT_LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, log_level.upper()))

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_to_file:
        if log_dir is None:
            log_dir = get_default_log_dir(workspace)
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_filename = f"{run_id}_{timestamp}.log" if run_id else f"autoscript_{timestamp}.log"
        log_path = log_dir / log_filename

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        logger.info(f"Logging to: {log_path}")

    return logger
