"""
Stored-procedure execution runtime.

Calls of the form ``(procedure, params, options)`` are dispatched over a
bounded pool of database sessions, retried on transient failures with
jittered exponential backoff, and answered with either the result sets or a
detailed execution report.
"""

from .classifier import ErrorClassification, classify
from .config import (
    CacheConfig,
    CallOptions,
    ConnectionSettings,
    LoggingConfig,
    PerformanceConfig,
    PoolConfig,
    RetryConfig,
    ServiceConfig,
)
from .config_sources import load_config
from .drivers.base import DatabaseSession, SessionFactory, SqlDialect, Statement
from .errors import (
    CallCancelledError,
    ErrorKind,
    InvalidProcedureNameError,
    PlaceholderMismatchError,
    PoolTimeoutError,
    ProcedureNotFoundError,
    SingletonError,
    StoredProcedureCallError,
    StoredProcedureError,
)
from .service import StoredProcedureService
from .sql import render_final_sql
from .utils.logging import configure_logging

__version__ = "0.1.0"

__all__ = [
    "CacheConfig",
    "CallCancelledError",
    "CallOptions",
    "ConnectionSettings",
    "DatabaseSession",
    "ErrorClassification",
    "ErrorKind",
    "InvalidProcedureNameError",
    "LoggingConfig",
    "PerformanceConfig",
    "PlaceholderMismatchError",
    "PoolConfig",
    "PoolTimeoutError",
    "ProcedureNotFoundError",
    "RetryConfig",
    "ServiceConfig",
    "SessionFactory",
    "SingletonError",
    "SqlDialect",
    "Statement",
    "StoredProcedureCallError",
    "StoredProcedureError",
    "StoredProcedureService",
    "classify",
    "configure_logging",
    "load_config",
    "render_final_sql",
]
