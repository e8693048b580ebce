"""
MySQL/MariaDB sessions backed by aiomysql.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiomysql

from ..config import ConnectionSettings
from ..errors import ErrorKind, StoredProcedureError, UnknownConnectionError
from .base import DatabaseSession, SessionFactory, SqlDialect, Statement

logger = logging.getLogger(__name__)

MYSQL_DIALECTS = (SqlDialect.MYSQL, SqlDialect.MARIADB)


def to_format_paramstyle(sql: str) -> str:
    """Translate ``?`` placeholders to the ``%s`` style used by aiomysql."""
    return sql.replace("%", "%%").replace("?", "%s")


class MySqlStatement(Statement):
    """A statement executed through an aiomysql cursor."""

    def __init__(self, cursor: Any, sql: str):
        self.cursor = cursor
        self.sql = sql
        self._driver_sql = to_format_paramstyle(sql)

    async def execute(self, params: Sequence[Any]) -> None:
        await self.cursor.execute(self._driver_sql, tuple(params))

    async def fetchall(self) -> List[Dict[str, Any]]:
        rows = await self.cursor.fetchall()
        return list(rows) if rows else []

    async def nextset(self) -> bool:
        return bool(await self.cursor.nextset())

    @property
    def rowcount(self) -> int:
        return self.cursor.rowcount

    async def close(self) -> None:
        await self.cursor.close()


class MySqlSession(DatabaseSession):
    """A session wrapping one aiomysql connection."""

    def __init__(self, conn: Any, dialect: SqlDialect = SqlDialect.MYSQL, database: Optional[str] = None):
        self.conn = conn
        self.dialect = dialect
        self._database = database

    @property
    def database(self) -> Optional[str]:
        return self._database

    async def ping(self) -> None:
        async with self.conn.cursor() as cursor:
            await cursor.execute("SELECT 1")
            await cursor.fetchone()

    async def prepare(self, sql: str) -> Statement:
        cursor = await self.conn.cursor()
        return MySqlStatement(cursor, sql)

    async def execute_command(self, sql: str) -> None:
        async with self.conn.cursor() as cursor:
            await cursor.execute(sql)

    async def close(self) -> None:
        self.conn.close()


class MySqlSessionFactory(SessionFactory):
    """Opens aiomysql connections for configured logical connections."""

    def __init__(self, connections: Mapping[str, ConnectionSettings]):
        """Initialize the factory.

        Args:
            connections: Connection settings keyed by logical name
        """
        self.connections = dict(connections)

    async def connect(self, connection_name: str) -> DatabaseSession:
        settings = self.connections.get(connection_name)
        if settings is None:
            raise UnknownConnectionError(connection_name)
        if settings.dialect not in MYSQL_DIALECTS:
            raise StoredProcedureError(
                f"Connection '{connection_name}' uses dialect '{settings.dialect.value}', "
                "which MySqlSessionFactory cannot open",
                kind=ErrorKind.NON_RETRYABLE
            )

        conn = await aiomysql.connect(
            host=settings.host,
            port=settings.port,
            user=settings.user,
            password=settings.password or "",
            db=settings.database,
            charset=settings.charset,
            connect_timeout=settings.connect_timeout,
            autocommit=True,
            cursorclass=aiomysql.DictCursor,
            **settings.options
        )
        logger.debug(f"Opened MySQL session for connection {connection_name} to {settings.host}:{settings.port}")
        return MySqlSession(conn, dialect=settings.dialect, database=settings.database)
