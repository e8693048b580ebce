"""
Driver-aware per-query timeout installation.

Each dialect maps to one policy. Failing to install a timeout is reported as
a warning and never aborts the call.
"""

import math
from enum import Enum
from typing import Dict, Optional

from .drivers.base import DatabaseSession, SqlDialect, Statement
from .events import EventLogger


class TimeoutPolicy(str, Enum):
    """How a timeout is installed for a dialect."""

    SESSION_VARIABLES = "session_variables"
    STATEMENT_ATTRIBUTE = "statement_attribute"
    GUARDED_STATEMENT_ATTRIBUTE = "guarded_statement_attribute"
    NONE = "none"


TIMEOUT_POLICIES: Dict[SqlDialect, TimeoutPolicy] = {
    SqlDialect.MYSQL: TimeoutPolicy.SESSION_VARIABLES,
    SqlDialect.MARIADB: TimeoutPolicy.SESSION_VARIABLES,
    SqlDialect.POSTGRESQL: TimeoutPolicy.STATEMENT_ATTRIBUTE,
    SqlDialect.SQLITE: TimeoutPolicy.NONE,
    SqlDialect.OTHER: TimeoutPolicy.GUARDED_STATEMENT_ATTRIBUTE,
}


def timeout_seconds(timeout_ms: int) -> int:
    """Round a millisecond timeout up to whole seconds, at least one."""
    return max(1, math.ceil(timeout_ms / 1000))


class TimeoutApplier:
    """Installs per-call timeouts according to the session's dialect."""

    def __init__(self, events: Optional[EventLogger] = None):
        self.events = events or EventLogger()

    def policy_for(self, dialect: SqlDialect) -> TimeoutPolicy:
        return TIMEOUT_POLICIES.get(dialect, TimeoutPolicy.GUARDED_STATEMENT_ATTRIBUTE)

    async def apply(
        self,
        session: DatabaseSession,
        statement: Statement,
        timeout_ms: int,
        connection: str = "",
        enabled: Optional[bool] = None
    ) -> bool:
        """Install a timeout for the statement about to run.

        Args:
            session: The borrowed session
            statement: The prepared statement
            timeout_ms: The timeout in milliseconds
            connection: Logical connection name, for warnings
            enabled: Per-call logging override

        Returns:
            True if a timeout was installed
        """
        policy = self.policy_for(session.dialect)
        seconds = timeout_seconds(timeout_ms)

        if policy == TimeoutPolicy.NONE:
            return False

        if policy == TimeoutPolicy.SESSION_VARIABLES:
            try:
                await session.execute_command(f"SET SESSION wait_timeout = {seconds}")
                await session.execute_command(f"SET SESSION interactive_timeout = {seconds}")
                return True
            except Exception as e:
                self._warn("Failed to set session timeout", session, connection, seconds, e, enabled)
                return False

        try:
            statement.set_timeout(seconds)
            return True
        except NotImplementedError as e:
            self._warn("Statement timeout attribute not supported", session, connection, seconds, e, enabled)
        except Exception as e:
            self._warn("Failed to set statement timeout", session, connection, seconds, e, enabled)
        return False

    def _warn(self, message, session, connection, seconds, error, enabled):
        self.events.warning(message, {
            "connection": connection,
            "dialect": session.dialect.value,
            "timeout_seconds": seconds,
            "error_message": str(error),
        }, enabled)
