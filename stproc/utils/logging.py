"""
Structured logging for the stored-procedure runtime.

This module provides:
- A per-task logging context (query id, procedure, connection)
- A log record type that captures that context
- A JSON formatter that also renders domain event fields
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO, Union

# Replaced, never mutated, so concurrent tasks cannot see each other's fields.
_context: ContextVar[Dict[str, Any]] = ContextVar("stproc_logging_context", default={})


def get_context() -> Dict[str, Any]:
    """Get a copy of the current logging context.

    Returns:
        The current logging context
    """
    return dict(_context.get())


@contextmanager
def logging_context(**kwargs):
    """Context manager that adds fields to every record logged inside it.

    The fields are scoped to the current task, so concurrent calls on one
    event loop keep separate contexts.

    Args:
        **kwargs: Key-value pairs to add to the context
    """
    token = _context.set({**_context.get(), **kwargs})
    try:
        yield
    finally:
        _context.reset(token)


class StructuredLogRecord(logging.LogRecord):
    """Log record that snapshots the logging context at creation."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.context = get_context()

class JsonFormatter(logging.Formatter):
    """Formatter that renders one JSON object per record."""

    def __init__(self, include_context: bool = True, include_stack_info: bool = True):
        """Initialize the formatter.

        Args:
            include_context: Whether to include the logging context
            include_stack_info: Whether to include stack info
        """
        super().__init__()
        self.include_context = include_context
        self.include_stack_info = include_stack_info

    def format(self, record: logging.LogRecord) -> str:
        """Format the record as JSON.

        Args:
            record: The log record to format

        Returns:
            The JSON document for the record
        """
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "process": record.process,
            "thread": record.thread,
        }

        event = getattr(record, "event", None)
        if event:
            log_data["event"] = event
            log_data["fields"] = getattr(record, "fields", {})

        context = getattr(record, "context", None)
        if self.include_context and context:
            log_data["context"] = context

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if self.include_stack_info and record.stack_info:
            log_data["stack_info"] = record.stack_info

        return json.dumps(log_data, default=str)


def configure_logging(
    level: Union[int, str] = logging.INFO,
    json_format: bool = False,
    include_context: bool = True,
    include_stack_info: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[TextIO] = None
) -> None:
    """Configure root logging for a process hosting the runtime.

    Library code never calls this; it is meant for scripts and services that
    embed the runtime and want JSON output with event fields.

    Args:
        level: The logging level, as a number or a level name
        json_format: Whether to use JSON formatting
        include_context: Whether to include context in JSON output
        include_stack_info: Whether to include stack info in JSON output
        log_file: Optional file to log to
        stream: Console stream, stdout by default
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logging.setLogRecordFactory(StructuredLogRecord)

    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    if json_format:
        formatter: logging.Formatter = JsonFormatter(
            include_context=include_context,
            include_stack_info=include_stack_info
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
