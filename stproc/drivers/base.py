"""
Driver-neutral session and statement interfaces.

The pool and the execution engine only talk to these interfaces. Statements
use ``?`` placeholders; adapters translate them to the driver's paramstyle.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class SqlDialect(str, Enum):
    """SQL dialects known to the timeout policy table."""

    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"
    OTHER = "other"


class Statement(ABC):
    """A prepared statement bound to one session."""

    @abstractmethod
    async def execute(self, params: Sequence[Any]) -> None:
        """Execute the statement with a positional parameter vector."""

    @abstractmethod
    async def fetchall(self) -> List[Dict[str, Any]]:
        """Drain the rows of the current row set."""

    @abstractmethod
    async def nextset(self) -> bool:
        """Advance to the next row set.

        Returns:
            True if another row set is available
        """

    def set_timeout(self, seconds: float) -> None:
        """Install a statement-level timeout.

        Raises:
            NotImplementedError: If the driver has no such attribute
        """
        raise NotImplementedError(f"{self.__class__.__name__} does not support statement timeouts")

    @property
    def rowcount(self) -> int:
        return -1

    async def close(self) -> None:
        """Release driver resources held by the statement."""


class DatabaseSession(ABC):
    """A live logical connection to a database server."""

    dialect: SqlDialect = SqlDialect.OTHER

    @property
    def database(self) -> Optional[str]:
        """The current schema, when the driver knows it."""
        return None

    @abstractmethod
    async def ping(self) -> None:
        """Issue a trivial round-trip; raise if the session is dead."""

    @abstractmethod
    async def prepare(self, sql: str) -> Statement:
        """Prepare a statement for execution."""

    @abstractmethod
    async def execute_command(self, sql: str) -> None:
        """Run a statement that returns no rows."""

    @abstractmethod
    async def close(self) -> None:
        """Close the session."""


class SessionFactory(ABC):
    """Opens sessions for logical connection names."""

    @abstractmethod
    async def connect(self, connection_name: str) -> DatabaseSession:
        """Open a new session.

        Args:
            connection_name: The logical connection name

        Returns:
            The new session
        """
