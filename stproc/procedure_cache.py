"""
Cached existence checks for stored procedures.

Only affirmative answers are cached, so a freshly deployed procedure becomes
visible on the next call. A failing catalog lookup answers True and logs a
warning rather than blocking the call.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from .cache import CacheBackend
from .config import CacheConfig
from .drivers.base import DatabaseSession, SqlDialect
from .errors import CallCancelledError
from .events import EventLogger
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

CATALOG_QUERY = (
    "SELECT EXISTS(SELECT 1 FROM information_schema.routines "
    "WHERE SPECIFIC_NAME = ? AND ROUTINE_SCHEMA = {schema}) AS procedure_exists"
)

CURRENT_SCHEMA_FUNCTIONS = {
    SqlDialect.MYSQL: "DATABASE()",
    SqlDialect.MARIADB: "DATABASE()",
    SqlDialect.POSTGRESQL: "current_schema()",
}


def cache_key(connection: str, procedure: str) -> str:
    return f"sp_exists:{connection}:{procedure}"


def catalog_query(session: DatabaseSession, procedure: str) -> Tuple[str, Sequence[Any]]:
    """Build the catalog query and its parameters for a session.

    The schema is bound as a parameter when the session knows it, and taken
    from the server's current-schema function otherwise.
    """
    if session.database:
        return CATALOG_QUERY.format(schema="?"), (procedure, session.database)
    function = CURRENT_SCHEMA_FUNCTIONS.get(session.dialect, "DATABASE()")
    return CATALOG_QUERY.format(schema=function), (procedure,)


def _first_value(row: Any) -> Any:
    if isinstance(row, dict):
        return next(iter(row.values()), None)
    if isinstance(row, (list, tuple)):
        return row[0] if row else None
    return row


class ProcedureExistenceCache:
    """Answers "does this procedure exist on this connection?"."""

    def __init__(
        self,
        pool: ConnectionPool,
        config: Optional[CacheConfig] = None,
        backend: Optional[CacheBackend] = None,
        events: Optional[EventLogger] = None
    ):
        """Initialize the existence cache.

        Args:
            pool: Pool used to borrow a session for catalog lookups
            config: Cache configuration
            backend: Where affirmative answers are stored; None disables caching
            events: Event sink for lookup warnings
        """
        self.pool = pool
        self.config = config or CacheConfig()
        self.backend = backend
        self.events = events or EventLogger()
        self.catalog_queries = 0

    @property
    def caching(self) -> bool:
        return self.config.procedure_exists_enabled and self.backend is not None

    async def exists(
        self,
        procedure: str,
        connection: str,
        enabled: Optional[bool] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Check whether a procedure exists on a connection.

        Args:
            procedure: The procedure name
            connection: The logical connection name
            enabled: Per-call logging override
            cancel_event: Caller cancellation signal, checked while waiting for a session

        Returns:
            False only when the catalog confirms the procedure is absent
        """
        key = cache_key(connection, procedure)
        if self.caching and await self.backend.get(key):
            return True

        try:
            found = await self._query_catalog(procedure, connection, cancel_event)
        except CallCancelledError:
            raise
        except Exception as e:
            self.events.warning("Procedure existence check failed, assuming it exists", {
                "procedure": procedure,
                "connection": connection,
                "error_message": str(e),
            }, enabled)
            return True

        if found and self.caching:
            await self.backend.set(key, True, ttl=self.config.procedure_exists_ttl_ms / 1000.0)
            logger.debug(f"Cached existence of {procedure} on {connection}")
        return found

    async def invalidate(self, procedure: str, connection: str) -> None:
        if self.backend is not None:
            await self.backend.delete(cache_key(connection, procedure))

    async def clear(self) -> None:
        if self.backend is not None:
            await self.backend.clear()

    async def stats(self) -> Dict[str, Any]:
        """Get backend statistics plus the number of catalog round-trips."""
        backend_stats = await self.backend.get_stats() if self.backend is not None else {}
        return dict(backend_stats, caching=self.caching, catalog_queries=self.catalog_queries)

    async def _query_catalog(
        self, procedure: str, connection: str, cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        self.catalog_queries += 1
        session = await self.pool.acquire(connection, cancel_event)
        try:
            sql, params = catalog_query(session.handle, procedure)
            statement = await session.handle.prepare(sql)
            try:
                await statement.execute(params)
                rows = await statement.fetchall()
            finally:
                await statement.close()
        finally:
            await self.pool.release(session)
        return bool(rows) and bool(_first_value(rows[0]))
