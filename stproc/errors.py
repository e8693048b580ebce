"""
Error types for the stored-procedure runtime.

Every error raised by the runtime itself derives from StoredProcedureError and
carries an ErrorKind. Driver errors travel unwrapped until the retry controller
gives up, at which point they are chained to a StoredProcedureCallError.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure taxonomy shared by the classifier and execution reports."""

    RETRYABLE_TRANSIENT = "retryable_transient"
    CONNECTION_FAULT = "connection_fault"
    NON_RETRYABLE = "non_retryable"
    INTERNAL = "internal"


class StoredProcedureError(Exception):
    """Base exception for stored-procedure runtime errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, code: Optional[Any] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RETRYABLE_TRANSIENT, ErrorKind.CONNECTION_FAULT)

    @property
    def connection_error(self) -> bool:
        return self.kind == ErrorKind.CONNECTION_FAULT


class PoolTimeoutError(StoredProcedureError):
    """Raised when no pool slot frees up within the acquire timeout."""

    def __init__(self, message: str = "Connection pool timeout: Unable to acquire database connection"):
        super().__init__(message, kind=ErrorKind.INTERNAL)


class ConnectionCreateError(StoredProcedureError):
    """Raised when a session could not be created and no driver error is available."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.CONNECTION_FAULT)


class UnknownConnectionError(StoredProcedureError, KeyError):
    """Raised when a call names a connection that is not configured."""

    def __init__(self, name: str):
        StoredProcedureError.__init__(
            self, f"Database connection '{name}' is not configured", kind=ErrorKind.NON_RETRYABLE
        )
        self.name = name

    def __str__(self) -> str:
        return self.message


class ProcedureNotFoundError(StoredProcedureError):
    """Raised when the catalog confirms a procedure does not exist."""

    def __init__(self, procedure: str, connection: str):
        super().__init__(
            f"Stored procedure '{procedure}' does not exist on connection '{connection}'",
            kind=ErrorKind.NON_RETRYABLE
        )
        self.procedure = procedure
        self.connection = connection


class PlaceholderMismatchError(StoredProcedureError):
    """Raised when a parameter list does not fit the placeholders of a statement."""

    def __init__(self, placeholders: int, parameters: int):
        super().__init__(
            f"Parameter count mismatch: {placeholders} placeholders but {parameters} parameters",
            kind=ErrorKind.INTERNAL
        )
        self.placeholders = placeholders
        self.parameters = parameters


class SingletonError(StoredProcedureError):
    """Raised on attempts to copy or unpickle the process-wide service."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.INTERNAL)


class CallCancelledError(StoredProcedureError):
    """Raised when the caller's cancellation signal fires during a call."""

    def __init__(self, message: str = "Stored procedure call cancelled"):
        super().__init__(message, kind=ErrorKind.INTERNAL)


class StoredProcedureCallError(StoredProcedureError):
    """Terminal error of a call after the retry controller gave up."""

    def __init__(
        self,
        procedure: str,
        attempts: int,
        cause_message: str,
        code: Optional[Any] = None,
        kind: ErrorKind = ErrorKind.NON_RETRYABLE
    ):
        super().__init__(
            f"Database error in stored procedure '{procedure}' after {attempts} attempts: {cause_message}",
            code=code,
            kind=kind
        )
        self.procedure = procedure
        self.attempts = attempts
        self.cause_message = cause_message


class InvalidProcedureNameError(StoredProcedureError, ValueError):
    """Raised when a procedure name is not a plain SQL identifier."""

    def __init__(self, procedure: str):
        StoredProcedureError.__init__(
            self, f"Invalid stored procedure name: {procedure!r}", kind=ErrorKind.INTERNAL
        )
        self.procedure = procedure
