"""
Runtime event sink.

Every layer reports structured events through an EventLogger bound to the
configured channel. When the host has not configured logging for that
channel, events are written as single lines to stderr instead. Emitting an
event never raises into the caller.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional, TextIO

from .config import LoggingConfig

QUERY_STARTED = "query_started"
QUERY_COMPLETED = "query_completed"
QUERY_FAILED = "query_failed"
SLOW_QUERY = "slow_query"
RETRY_ATTEMPT = "retry_attempt"
CONNECTION_CREATED = "connection_created"
CONNECTION_IDLE_CLEANUP = "connection_idle_cleanup"
POOL_RESET = "pool_reset"
POOL_ACQUIRE_TIMEOUT = "pool_acquire_timeout"
CALL_FAILED = "call_failed"
WARNING = "warning"


class EventLogger:
    """Structured, level-tagged event emitter."""

    def __init__(self, config: Optional[LoggingConfig] = None, stream: Optional[TextIO] = None):
        """Initialize the event logger.

        Args:
            config: Logging configuration; defaults apply when omitted
            stream: Fallback stream, stderr at emit time when omitted
        """
        self.config = config or LoggingConfig()
        self.logger = logging.getLogger(self.config.channel)
        self.stream = stream

    def emit(
        self,
        event: str,
        level: int,
        message: str,
        fields: Optional[Dict[str, Any]] = None,
        enabled: Optional[bool] = None
    ) -> None:
        """Emit one event.

        Args:
            event: Event type name
            level: Logging level
            message: Human-readable message
            fields: Structured fields of the event
            enabled: Per-call override of the master switch
        """
        if not (self.config.enabled if enabled is None else enabled):
            return
        fields = fields or {}
        try:
            if self.logger.hasHandlers():
                self.logger.log(level, message, extra={"event": event, "fields": fields})
                return
        except Exception:
            pass
        self._fallback(event, level, message, fields)

    def _fallback(self, event: str, level: int, message: str, fields: Dict[str, Any]) -> None:
        try:
            stream = self.stream or sys.stderr
            payload = json.dumps(dict(fields, event=event), default=str)
            stream.write(f"[{logging.getLevelName(level)}] {message} {payload}\n")
            stream.flush()
        except Exception:
            # Nothing left to report to.
            pass

    def query_started(self, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        if self.config.log_queries:
            self.emit(QUERY_STARTED, logging.INFO, "Stored procedure query started", fields, enabled)

    def query_completed(self, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        if self.config.log_execution_time:
            self.emit(QUERY_COMPLETED, logging.INFO, "Stored procedure query completed", fields, enabled)

    def query_failed(self, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        if self.config.log_errors:
            self.emit(QUERY_FAILED, logging.ERROR, "Stored procedure query failed", fields, enabled)

    def slow_query(self, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        self.emit(SLOW_QUERY, logging.WARNING, "Slow stored procedure query detected", fields, enabled)

    def retry_attempt(self, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        self.emit(RETRY_ATTEMPT, logging.WARNING, "Retrying stored procedure call", fields, enabled)

    def call_failed(self, message: str, fields: Dict[str, Any], enabled: Optional[bool] = None) -> None:
        if self.config.log_errors:
            self.emit(CALL_FAILED, logging.CRITICAL, message, fields, enabled)

    def connection_created(self, fields: Dict[str, Any]) -> None:
        self.emit(CONNECTION_CREATED, logging.INFO, "Database connection created", fields)

    def connection_idle_cleanup(self, fields: Dict[str, Any]) -> None:
        self.emit(CONNECTION_IDLE_CLEANUP, logging.INFO, "Idle database connections removed", fields)

    def pool_reset(self, fields: Dict[str, Any]) -> None:
        self.emit(POOL_RESET, logging.INFO, "Connection pool reset", fields)

    def pool_acquire_timeout(self, fields: Dict[str, Any]) -> None:
        self.emit(POOL_ACQUIRE_TIMEOUT, logging.WARNING, "Connection pool acquire timed out", fields)

    def warning(self, message: str, fields: Optional[Dict[str, Any]] = None, enabled: Optional[bool] = None) -> None:
        self.emit(WARNING, logging.WARNING, message, fields, enabled)
