"""
Pytest configuration and fixtures for the stproc test suite.

Drivers are replaced by scripted in-memory fakes so every scenario is
deterministic and runs without a database server.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from stproc.clock import JitterSource
from stproc.config import ServiceConfig
from stproc.drivers.base import DatabaseSession, SessionFactory, SqlDialect, Statement
from stproc.service import StoredProcedureService


@dataclass
class Outcome:
    """Scripted server behaviour for one CALL."""

    result_sets: List[List[Dict[str, Any]]] = field(default_factory=lambda: [[]])
    error: Optional[BaseException] = None
    delay_ms: float = 0.0
    trailing_status: bool = True
    before: Optional[Callable[[], None]] = None


class FakeStatement(Statement):
    """Statement replaying a scripted outcome."""

    def __init__(self, session: "FakeSession", sql: str):
        self.session = session
        self.sql = sql
        self.params: Optional[List[Any]] = None
        self.timeout: Optional[float] = None
        self.closed = False
        self._sets: List[List[Dict[str, Any]]] = []
        self._index = 0

    async def execute(self, params: Sequence[Any]) -> None:
        self.params = list(params)
        self.session.executed.append((self.sql, self.params))
        outcome = self.session.factory.next_outcome(self.sql, self.params)
        if outcome.before is not None:
            outcome.before()
        if outcome.delay_ms:
            await asyncio.sleep(outcome.delay_ms / 1000.0)
        if outcome.error is not None:
            raise outcome.error
        self._sets = [list(rows) for rows in outcome.result_sets]
        # MySQL ends every CALL with an empty status result
        if outcome.trailing_status:
            self._sets.append([])
        self._index = 0

    async def fetchall(self) -> List[Dict[str, Any]]:
        return self._sets[self._index] if self._index < len(self._sets) else []

    async def nextset(self) -> bool:
        self._index += 1
        return self._index < len(self._sets)

    def set_timeout(self, seconds: float) -> None:
        if not self.session.factory.statement_timeouts:
            raise NotImplementedError("statement timeouts not supported")
        self.timeout = seconds

    async def close(self) -> None:
        self.closed = True


class FakeSession(DatabaseSession):
    """In-memory stand-in for a database session."""

    def __init__(self, factory: "FakeSessionFactory", name: str, number: int):
        self.factory = factory
        self.name = name
        self.number = number
        self.dialect = factory.dialect
        self.dead = False
        self.closed = False
        self.pings = 0
        self.commands: List[str] = []
        self.executed: List[Any] = []

    @property
    def database(self) -> Optional[str]:
        return self.factory.database

    async def ping(self) -> None:
        self.pings += 1
        if self.factory.ping_delay_ms:
            await asyncio.sleep(self.factory.ping_delay_ms / 1000.0)
        if self.dead or self.closed:
            raise ConnectionError("Lost connection to MySQL server during query")

    async def prepare(self, sql: str) -> Statement:
        if self.factory.prepare_error is not None:
            raise self.factory.prepare_error
        return FakeStatement(self, sql)

    async def execute_command(self, sql: str) -> None:
        if self.factory.command_error is not None:
            raise self.factory.command_error
        self.commands.append(sql)

    async def close(self) -> None:
        if self.factory.close_delay_ms:
            await asyncio.sleep(self.factory.close_delay_ms / 1000.0)
        self.closed = True


class FakeSessionFactory(SessionFactory):
    """Session factory with scripted CALL outcomes and a fake catalog."""

    def __init__(self, dialect: SqlDialect = SqlDialect.MYSQL):
        self.dialect = dialect
        self.database: Optional[str] = None
        self.sessions: List[FakeSession] = []
        self.outcomes: deque = deque()
        self.connect_errors: deque = deque()
        self.prepare_error: Optional[BaseException] = None
        self.command_error: Optional[BaseException] = None
        self.statement_timeouts = True
        self.ping_delay_ms = 0.0
        self.close_delay_ms = 0.0
        self.procedures = set()
        self.catalog_error: Optional[BaseException] = None
        self.catalog_queries = 0

    async def connect(self, connection_name: str) -> DatabaseSession:
        if self.connect_errors:
            raise self.connect_errors.popleft()
        session = FakeSession(self, connection_name, len(self.sessions) + 1)
        self.sessions.append(session)
        return session

    def script(self, *outcomes: Outcome) -> None:
        self.outcomes.extend(outcomes)

    def next_outcome(self, sql: str, params: List[Any]) -> Outcome:
        if "information_schema.routines" in sql:
            self.catalog_queries += 1
            if self.catalog_error is not None:
                return Outcome(error=self.catalog_error, trailing_status=False)
            found = int(params[0] in self.procedures)
            return Outcome(result_sets=[[{"procedure_exists": found}]], trailing_status=False)
        if self.outcomes:
            return self.outcomes.popleft()
        return Outcome()

    @property
    def live_sessions(self) -> List[FakeSession]:
        return [s for s in self.sessions if not s.closed]


class RecordingSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []
        self.hooks: List[Callable[[float], None]] = []

    async def __call__(self, delay_ms: float) -> None:
        self.delays.append(delay_ms)
        for hook in self.hooks:
            hook(delay_ms)
        await asyncio.sleep(0)


def events_named(caplog, name: str) -> List[logging.LogRecord]:
    """Get the captured runtime events of one type."""
    return [record for record in caplog.records if getattr(record, "event", None) == name]


@pytest.fixture
def factory():
    """Create a fake session factory."""
    return FakeSessionFactory()


@pytest.fixture
def sleeper():
    """Create a recording sleep function."""
    return RecordingSleep()


@pytest.fixture
def stp_logs(caplog):
    """Capture every runtime event on the stp channel."""
    caplog.set_level(logging.DEBUG, logger="stp")
    return caplog


@pytest.fixture
def make_service(factory, sleeper):
    """Build services wired to the fake factory and recording sleep."""

    def _make(sleep=None, **sections) -> StoredProcedureService:
        return StoredProcedureService(
            config=ServiceConfig(**sections),
            session_factory=factory,
            sleep=sleep or sleeper,
            jitter=JitterSource(seed=7),
        )

    return _make


@pytest.fixture(autouse=True)
def reset_singleton():
    """Make sure no test leaks the process-wide service into another."""
    StoredProcedureService._instance = None
    yield
    StoredProcedureService._instance = None
