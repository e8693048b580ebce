"""
Error classification for retry decisions.

A driver error is matched by case-folded message substring and by its native
numeric code. The verdict decides whether the retry controller tries again and
whether the pool must be emptied first.
"""

from dataclasses import dataclass
from typing import Any, FrozenSet, Optional, Tuple

from .errors import ErrorKind, StoredProcedureError

RETRYABLE_MESSAGES: Tuple[str, ...] = (
    "connection lost",
    "connection timeout",
    "connection refused",
    "connection reset",
    "server has gone away",
    "lost connection to mysql server",
    "mysql server has gone away",
    "lock wait timeout exceeded",
    "table is locked",
    "deadlock found",
    "deadlock detected",
    "too many connections",
    "max_connections",
    "service temporarily unavailable",
    "resource temporarily unavailable",
    "network error",
    "timeout expired",
    "operation timed out",
    "broken pipe",
    "serialization failure",
    "could not serialize",
    "restart transaction",
)

CONNECTION_FAULT_MESSAGES: Tuple[str, ...] = (
    "connection lost",
    "connection timeout",
    "connection refused",
    "connection reset",
    "server has gone away",
    "lost connection to mysql server",
    "mysql server has gone away",
    "broken pipe",
)

# MySQL/MariaDB: too many connections, server shutdown, lock wait timeout,
# deadlock, socket/host connect failure, server gone away, lost connection.
RETRYABLE_CODES: FrozenSet[int] = frozenset({1040, 1053, 1205, 1213, 2002, 2003, 2006, 2013})
CONNECTION_FAULT_CODES: FrozenSet[int] = frozenset({2002, 2003, 2006, 2013})


@dataclass(frozen=True)
class ErrorClassification:
    """Verdict for a single failed attempt."""

    kind: ErrorKind
    message: str
    code: Optional[Any] = None

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RETRYABLE_TRANSIENT, ErrorKind.CONNECTION_FAULT)

    @property
    def is_connection_fault(self) -> bool:
        return self.kind == ErrorKind.CONNECTION_FAULT


def error_code(exc: BaseException) -> Optional[Any]:
    """Extract the driver-native error code from an exception.

    PyMySQL/aiomysql errors carry ``(code, message)`` in ``args``; other
    drivers expose ``errno`` or ``code`` attributes.

    Args:
        exc: The exception raised by the driver

    Returns:
        The error code, or None if the exception carries none
    """
    if isinstance(exc, StoredProcedureError):
        return exc.code
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], int) and not isinstance(args[0], bool):
        return args[0]
    for attr in ("errno", "code", "pgcode", "sqlstate"):
        value = getattr(exc, attr, None)
        if value is not None:
            return value
    return None


def error_message(exc: BaseException) -> str:
    """Extract the human-readable driver message from an exception."""
    if isinstance(exc, StoredProcedureError):
        return exc.message
    args = getattr(exc, "args", ())
    if len(args) >= 2 and isinstance(args[0], int) and isinstance(args[1], str):
        return args[1]
    message = str(exc)
    return message or exc.__class__.__name__


def _as_int(code: Any) -> Optional[int]:
    if isinstance(code, bool):
        return None
    if isinstance(code, int):
        return code
    if isinstance(code, str) and code.isdigit():
        return int(code)
    return None


def classify(exc: BaseException) -> ErrorClassification:
    """Classify an exception raised during an attempt.

    Runtime errors keep the kind they were raised with. Driver errors are
    matched against the connection-fault subset first, then the wider
    retryable set; anything else is non-retryable.

    Args:
        exc: The exception to classify

    Returns:
        The classification of the exception
    """
    message = error_message(exc)
    code = error_code(exc)

    if isinstance(exc, StoredProcedureError):
        return ErrorClassification(kind=exc.kind, message=message, code=code)

    folded = message.casefold()
    numeric = _as_int(code)

    if numeric in CONNECTION_FAULT_CODES or any(s in folded for s in CONNECTION_FAULT_MESSAGES):
        kind = ErrorKind.CONNECTION_FAULT
    elif numeric in RETRYABLE_CODES or any(s in folded for s in RETRYABLE_MESSAGES):
        kind = ErrorKind.RETRYABLE_TRANSIENT
    else:
        kind = ErrorKind.NON_RETRYABLE

    return ErrorClassification(kind=kind, message=message, code=code)
