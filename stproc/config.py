"""
Configuration models for the stored-procedure runtime.

A ServiceConfig is validated once and frozen when the service is built.
CallOptions is the per-call overlay; it is resolved against the service
configuration into a ResolvedCallOptions before the first attempt.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .drivers.base import SqlDialect

MAX_DELAY_MS = 30000
DEFAULT_TIMEOUT_MS = 30000


class PoolConfig(BaseModel):
    """Configuration for the session pool."""

    model_config = ConfigDict(frozen=True)

    max_connections: int = Field(10, ge=1, description="Hard cap on live sessions per logical connection")
    acquire_timeout_ms: int = Field(30000, ge=0, description="Ceiling on waiting for a free slot")
    idle_timeout_ms: int = Field(300000, ge=0, description="Idle sessions older than this are evicted")
    create_retry_attempts: int = Field(3, ge=1, description="Attempts to establish a fresh session")


class RetryConfig(BaseModel):
    """Configuration for the retry controller."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(3, ge=0, description="Additional attempts beyond the first")
    base_delay_ms: int = Field(100, ge=1, description="Baseline for exponential backoff")
    max_delay_ms: int = Field(MAX_DELAY_MS, description="Cap for any single backoff")

    @field_validator("max_delay_ms")
    @classmethod
    def validate_max_delay(cls, v):
        """The backoff cap is not tunable."""
        if v != MAX_DELAY_MS:
            raise ValueError(f"max_delay_ms is fixed at {MAX_DELAY_MS}")
        return v


class CacheConfig(BaseModel):
    """Configuration for the procedure existence cache."""

    model_config = ConfigDict(frozen=True)

    procedure_exists_enabled: bool = Field(True, description="Whether affirmative lookups are cached")
    procedure_exists_ttl_ms: int = Field(86400000, ge=0, description="Lifetime of a cached lookup")


class PerformanceConfig(BaseModel):
    """Configuration for profiling and query timeouts."""

    model_config = ConfigDict(frozen=True)

    slow_query_threshold_ms: int = Field(2000, ge=0, description="Calls slower than this are logged")
    profiling_enabled: bool = Field(False, description="Whether per-procedure metrics are recorded")
    query_timeout_enabled: bool = Field(True, description="Whether per-call timeouts are installed")


class LoggingConfig(BaseModel):
    """Configuration for the event logger."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(True, description="Master switch for runtime events")
    channel: str = Field("stp", min_length=1, description="Logger name events are emitted on")
    log_queries: bool = Field(True, description="Emit query_started events")
    log_errors: bool = Field(True, description="Emit query_failed and terminal failure events")
    log_execution_time: bool = Field(True, description="Emit query_completed events")


class ConnectionSettings(BaseModel):
    """Connection parameters for one logical connection."""

    model_config = ConfigDict(frozen=True)

    dialect: SqlDialect = Field(SqlDialect.MYSQL, description="Database dialect")
    host: str = Field("localhost", description="Database host")
    port: int = Field(3306, description="Database port")
    user: str = Field("root", description="Database user")
    password: Optional[str] = Field(None, description="Database password")
    database: Optional[str] = Field(None, description="Default schema")
    charset: str = Field("utf8mb4", description="Connection charset")
    connect_timeout: float = Field(10.0, gt=0, description="Connect timeout in seconds")
    options: Dict[str, Any] = Field(default_factory=dict, description="Extra driver options")


class ServiceConfig(BaseModel):
    """Immutable configuration snapshot of a service instance."""

    model_config = ConfigDict(frozen=True)

    default_connection: str = Field("mysql", min_length=1, description="Logical connection used when a call names none")
    default_timeout_ms: int = Field(DEFAULT_TIMEOUT_MS, ge=0, description="Per-call timeout when a call sets none")
    connections: Dict[str, ConnectionSettings] = Field(default_factory=dict, description="Logical connections")
    pool: PoolConfig = Field(default_factory=PoolConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    perf: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# camelCase option names of the legacy callStoredProcedure API.
_LEGACY_KEYS = {
    "checkStoredProcedure": "check_procedure_exists",
    "enableLogging": "enable_logging",
    "retryAttempts": "retry_max_attempts",
    "retryDelay": "retry_base_delay_ms",
    "returnExecutionInfo": "return_execution_info",
}


class CallOptions(BaseModel):
    """Per-call overlay on top of the service configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    connection: Optional[str] = Field(None, description="Logical connection for this call")
    timeout_ms: Optional[int] = Field(None, ge=0, description="Round-trip timeout for this call")
    retry_max_attempts: Optional[int] = Field(None, ge=0, description="Additional attempts for this call")
    retry_base_delay_ms: Optional[int] = Field(None, ge=1, description="Backoff baseline for this call")
    check_procedure_exists: bool = Field(False, description="Confirm the procedure exists before calling it")
    return_execution_info: bool = Field(False, description="Return an execution report instead of result sets")
    enable_logging: Optional[bool] = Field(None, description="Override logging.enabled for this call")
    cancel_event: Optional[asyncio.Event] = Field(None, description="Cancellation signal set by the caller")

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]] = None) -> "CallOptions":
        """Build call options from a loosely shaped mapping.

        Accepts flat keys (``retry_max_attempts``), dotted keys
        (``"retry.max_attempts"``), a nested ``retry`` mapping, and the
        camelCase names of the legacy API. ``timeout`` is in seconds.

        Args:
            options: The caller's options, or None

        Returns:
            The validated call options
        """
        if options is None:
            return cls()
        if isinstance(options, CallOptions):
            return options

        values: Dict[str, Any] = {}
        for key, value in options.items():
            if key == "retry" and isinstance(value, Mapping):
                for sub_key, sub_value in value.items():
                    values[f"retry_{sub_key}"] = sub_value
            elif key.startswith("retry."):
                values["retry_" + key[len("retry."):]] = value
            elif key in _LEGACY_KEYS:
                values[_LEGACY_KEYS[key]] = value
            elif key == "timeout":
                values["timeout_ms"] = None if value is None else int(value * 1000)
            else:
                values[key] = value
        return cls(**values)

    def resolve(self, config: ServiceConfig) -> "ResolvedCallOptions":
        """Fill unset fields from the service configuration."""
        enable_logging = config.logging.enabled if self.enable_logging is None else self.enable_logging
        return ResolvedCallOptions(
            connection=self.connection or config.default_connection,
            timeout_ms=config.default_timeout_ms if self.timeout_ms is None else self.timeout_ms,
            max_attempts=config.retry.max_attempts if self.retry_max_attempts is None else self.retry_max_attempts,
            base_delay_ms=config.retry.base_delay_ms if self.retry_base_delay_ms is None else self.retry_base_delay_ms,
            max_delay_ms=config.retry.max_delay_ms,
            check_procedure_exists=self.check_procedure_exists,
            return_execution_info=self.return_execution_info,
            logging_enabled=enable_logging,
            cancel_event=self.cancel_event,
        )


@dataclass(frozen=True)
class ResolvedCallOptions:
    """Concrete per-call settings used by the engine and retry controller."""

    connection: str
    timeout_ms: int
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    check_procedure_exists: bool
    return_execution_info: bool
    logging_enabled: bool
    cancel_event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()
