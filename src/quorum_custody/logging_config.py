"""Structured logging configuration with correlation IDs for request tracing.

This module provides structured JSON logging with:
- Correlation IDs for tracing a call through the custody components
- Contextual fields (wallet, transaction, operation)
- Consistent log formatting
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variables for correlation tracking
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
wallet_id_var: ContextVar[Optional[str]] = ContextVar("wallet_id", default=None)
transaction_id_var: ContextVar[Optional[str]] = ContextVar("transaction_id", default=None)
operation_var: ContextVar[Optional[str]] = ContextVar("operation", default=None)

_CONTEXT_FIELDS = ("correlation_id", "wallet_id", "transaction_id", "operation")
_CONTEXT_VARS = {
    "correlation_id": correlation_id_var,
    "wallet_id": wallet_id_var,
    "transaction_id": transaction_id_var,
    "operation": operation_var,
}

_RESERVED_ATTRS = frozenset((
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
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
) + _CONTEXT_FIELDS)


class ContextFilter(logging.Filter):
    """Logging filter that adds correlation ID and context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.wallet_id = wallet_id_var.get()
        record.transaction_id = transaction_id_var.get()
        record.operation = operation_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

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

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"cor_{uuid.uuid4().hex[:16]}"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def clear_context() -> None:
    """Clear all context variables."""
    correlation_id_var.set(None)
    wallet_id_var.set(None)
    transaction_id_var.set(None)
    operation_var.set(None)


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        wallet_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        self.values = {
            "correlation_id": correlation_id,
            "wallet_id": wallet_id,
            "transaction_id": transaction_id,
            "operation": operation,
        }
        self._tokens = {}

    def __enter__(self) -> "LogContext":
        for name, value in self.values.items():
            if value:
                self._tokens[name] = _CONTEXT_VARS[name].set(value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for name, token in self._tokens.items():
            _CONTEXT_VARS[name].reset(token)
        self._tokens = {}
