"""
Unified Logging Module for CellForge

Provides structured JSON logging with consistent formatting across all modules.
Supports both development (pretty print) and production (JSON) modes.

Usage:
    from cellforge.utils.logging import get_logger, setup_logging

    # Initialize at app startup
    setup_logging()

    # Get logger in any module
    logger = get_logger(__name__)
    logger.info("Cell generated", extra={"column_id": "c1", "row": 3})
"""

import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cellforge.core.config import settings

# Context fields surfaced by both formatters when present on a record
CONTEXT_FIELDS = (
    "request_id",
    "column_id",
    "row",
    "model",
    "stage",
    "duration_ms",
    "cached",
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_data, default=str)


class PrettyFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        reset = self.COLORS["RESET"]
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        message = f"{color}{timestamp} [{record.levelname:^8}]{reset} {record.name}: {record.getMessage()}"

        extra_fields = {
            key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)
        }
        if extra_fields:
            extras = " | ".join(f"{k}={v}" for k, v in extra_fields.items())
            message += f" {color}({extras}){reset}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context to all log messages."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


_logging_configured = False


def setup_logging(
    level: str | None = None,
    format_type: str | None = None,
    log_file: str | None = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Format type (json or pretty)
        log_file: Path to log file (None for stdout only)
    """
    global _logging_configured

    if _logging_configured:
        return

    level = (level or settings.LOG_LEVEL).upper()
    format_type = format_type or settings.LOG_FORMAT
    log_file = log_file or settings.LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()

    if format_type == "json" or settings.ENVIRONMENT == "production":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = PrettyFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=10 * 1024 * 1024, backupCount=5
        )
        file_handler.setFormatter(JSONFormatter())  # Always JSON for files
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    for noisy in ("httpx", "httpcore", "asyncio", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _logging_configured = True

    get_logger(__name__).info(
        f"Logging configured (level={level}, format={format_type}, "
        f"environment={settings.ENVIRONMENT}, file={log_file})"
    )


def get_logger(name: str, **context) -> logging.LoggerAdapter:
    """
    Get a logger with optional context.

    Usage:
        logger = get_logger(__name__, column_id="c1")
        logger.info("Dispatching row", extra={"row": 3})
    """
    return ContextAdapter(logging.getLogger(name), context)


def log_generation(
    column_id: str,
    row: int,
    duration_ms: float,
    success: bool,
    cached: bool = False,
    error: str | None = None,
) -> None:
    """Log the terminal outcome of one cell."""
    logger = get_logger("cellforge.generation")
    extra = {
        "column_id": column_id,
        "row": row,
        "duration_ms": round(duration_ms, 2),
        "cached": cached,
        "stage": "generation",
    }
    if success:
        logger.info(f"Cell {column_id}[{row}] generated", extra=extra)
    else:
        logger.warning(f"Cell {column_id}[{row}] failed: {error}", extra=extra)


def log_model_inference(
    model: str, provider: str, duration_ms: float, streamed: bool = False
) -> None:
    """Log a completed provider call."""
    get_logger("cellforge.inference").debug(
        f"{model} via {provider} completed{' (stream)' if streamed else ''}",
        extra={"model": model, "duration_ms": round(duration_ms, 2), "stage": "inference"},
    )
