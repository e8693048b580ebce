"""
CALL statement construction and diagnostic rendering.

The CALL skeleton uses one ``?`` placeholder per parameter and is cached by
(procedure, arity). render_final_sql() inlines parameters for logging only;
its output is never executed.
"""

import re
import threading
from decimal import Decimal
from typing import Any, Dict, Sequence, Tuple

from .errors import InvalidProcedureNameError, PlaceholderMismatchError

PROCEDURE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)?$")
NUMERIC_STRING_PATTERN = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")


def validate_procedure_name(procedure: str) -> str:
    """Check that a procedure name is an identifier, optionally schema-qualified.

    Raises:
        InvalidProcedureNameError: If the name is empty or not an identifier
    """
    if not isinstance(procedure, str) or not PROCEDURE_NAME_PATTERN.match(procedure):
        raise InvalidProcedureNameError(procedure)
    return procedure


def build_call_sql(procedure: str, arity: int) -> str:
    """Build ``CALL name(?, ?, ...)`` for the given number of parameters."""
    return f"CALL {procedure}({', '.join('?' * arity)})"


class SqlSkeletonCache:
    """Thread-safe cache of CALL skeletons keyed by (procedure, arity)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._skeletons: Dict[Tuple[str, int], str] = {}
        self.hits = 0
        self.builds = 0

    def get(self, procedure: str, arity: int) -> str:
        """Get the CALL skeleton, building it on first use.

        Args:
            procedure: The procedure name
            arity: The number of parameters

        Returns:
            The CALL statement with positional placeholders
        """
        key = (procedure, arity)
        with self._lock:
            sql = self._skeletons.get(key)
            if sql is not None:
                self.hits += 1
                return sql
            sql = build_call_sql(validate_procedure_name(procedure), arity)
            self._skeletons[key] = sql
            self.builds += 1
            return sql

    def clear(self) -> None:
        with self._lock:
            self._skeletons.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._skeletons)


def render_literal(value: Any) -> str:
    """Render a scalar parameter as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str) and NUMERIC_STRING_PATTERN.match(value):
        return value
    return "'" + str(value).replace("'", "''") + "'"


def render_final_sql(skeleton: str, params: Sequence[Any]) -> str:
    """Substitute parameters into a CALL skeleton for diagnostics.

    Args:
        skeleton: The CALL statement with ``?`` placeholders
        params: The positional parameters

    Returns:
        The statement with every placeholder replaced by a literal

    Raises:
        PlaceholderMismatchError: If the counts differ
    """
    parts = skeleton.split("?")
    placeholders = len(parts) - 1
    if placeholders != len(params):
        raise PlaceholderMismatchError(placeholders, len(params))

    rendered = [parts[0]]
    for value, tail in zip(params, parts[1:]):
        rendered.append(render_literal(value))
        rendered.append(tail)
    return "".join(rendered)
