"""
Structured logging configuration for the ingestion core.

Log records are emitted as JSON objects carrying the current collection
context (plugin, subtask, params key) so that every line produced while a
subtask runs can be attributed to it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Context variable for the subtask currently executing
log_context_var: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


# ============================================================================
# JSON Formatter
# ============================================================================

class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON objects with standard fields:
    - timestamp: ISO 8601 timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - params_key: Collection unit being collected (if any)
    - context: Collection context (if available)
    - extra fields passed via ``extra={"extra_fields": {...}}``
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        ctx = log_context_var.get()
        if ctx:
            log_data["context"] = ctx
            if "params_key" in ctx:
                log_data["params_key"] = ctx["params_key"]

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class ContextFilter(logging.Filter):
    """Expose the plugin, subtask and params key on records for plain-text formats."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = log_context_var.get()
        record.plugin = ctx.get("plugin", "-")
        record.subtask = ctx.get("subtask", "-")
        record.params_key = ctx.get("params_key", "-")
        return True


# ============================================================================
# Logging Setup
# ============================================================================

def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True,
):
    """
    Setup application logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for file logging
        json_format: Use JSON formatting (True) or plain text (False)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s [%(name)s:%(lineno)s] [%(plugin)s.%(subtask)s %(params_key)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)

    # Set levels for noisy libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={level}, json={json_format}, file={log_file}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


# ============================================================================
# Context Management
# ============================================================================

class log_context:
    """
    Context manager for adding context to all log messages within a scope.

    Example:
        with log_context(plugin="tapd", subtask="collectWorklogs"):
            logger.info("collect worklogs")
    """

    def __init__(self, **kwargs):
        self.context = kwargs
        self.token = None

    def __enter__(self):
        current_context = log_context_var.get().copy()
        current_context.update(self.context)
        self.token = log_context_var.set(current_context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        log_context_var.reset(self.token)


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """
    Log an error with exception details and context.

    Args:
        logger: Logger instance
        message: Error message
        error: Exception object
        **kwargs: Additional context fields
    """
    logger.error(message, extra={
        "extra_fields": {
            "error_type": type(error).__name__,
            "error_message": str(error),
            **kwargs,
        }
    }, exc_info=error)
