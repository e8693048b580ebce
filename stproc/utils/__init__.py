"""Shared utilities for the stored-procedure runtime."""

from .logging import (
    JsonFormatter,
    StructuredLogRecord,
    configure_logging,
    get_context,
    logging_context,
)

__all__ = [
    "JsonFormatter",
    "StructuredLogRecord",
    "configure_logging",
    "get_context",
    "logging_context",
]
