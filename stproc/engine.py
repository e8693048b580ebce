"""
Single-attempt stored-procedure execution.

The engine prepares the CALL statement, binds parameters, drains every result
set and records metrics. It never retries; errors propagate to the retry
controller after the borrowed session has been released.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .classifier import error_code, error_message
from .clock import monotonic_ms, wall_time
from .config import PerformanceConfig, ResolvedCallOptions
from .drivers.base import Statement
from .errors import ProcedureNotFoundError
from .events import EventLogger
from .metrics import MetricsRegistry
from .pool import ConnectionPool
from .procedure_cache import ProcedureExistenceCache
from .sql import SqlSkeletonCache
from .timeouts import TimeoutApplier
from .utils.logging import logging_context

logger = logging.getLogger(__name__)

ResultSet = List[Dict[str, Any]]


@dataclass
class ExecutionResult:
    """Outcome of one successful attempt."""

    result_sets: List[ResultSet]
    sql: str
    params: List[Any]
    connection: str
    query_id: str
    execution_time_ms: float
    timestamp: float = field(default_factory=lambda: wall_time().timestamp())

    @property
    def result_sets_count(self) -> int:
        return len(self.result_sets)

    @property
    def rows(self) -> int:
        return sum(len(result_set) for result_set in self.result_sets)


def new_query_id(attempt_index: int) -> str:
    return f"stp_query_{uuid.uuid4().hex[:16]}_attempt_{attempt_index + 1}"


async def fetch_result_sets(statement: Statement) -> List[ResultSet]:
    """Drain every row set of an executed statement in server order.

    The first row set is kept even when empty so a successful call always
    yields at least one; later empty row sets are dropped.
    """
    result_sets: List[ResultSet] = []
    while True:
        rows = await statement.fetchall()
        if rows or not result_sets:
            result_sets.append(list(rows))
        if not await statement.nextset():
            break
    return result_sets


class ExecutionEngine:
    """Runs one attempt of a stored-procedure call."""

    def __init__(
        self,
        pool: ConnectionPool,
        skeletons: SqlSkeletonCache,
        existence: ProcedureExistenceCache,
        timeouts: TimeoutApplier,
        metrics: MetricsRegistry,
        events: EventLogger,
        perf: Optional[PerformanceConfig] = None,
        clock: Callable[[], float] = monotonic_ms
    ):
        self.pool = pool
        self.skeletons = skeletons
        self.existence = existence
        self.timeouts = timeouts
        self.metrics = metrics
        self.events = events
        self.perf = perf or PerformanceConfig()
        self.clock = clock

    async def execute(
        self,
        procedure: str,
        params: Sequence[Any],
        options: ResolvedCallOptions,
        attempt_index: int = 0
    ) -> ExecutionResult:
        """Execute a stored procedure once.

        Args:
            procedure: The procedure name
            params: Positional scalar parameters
            options: Resolved call options
            attempt_index: Zero-based attempt number, for query ids

        Returns:
            The result sets with the CALL skeleton and timing

        Raises:
            ProcedureNotFoundError: If the existence check confirms absence
            Exception: Any driver error, unwrapped
        """
        params = list(params)
        query_id = new_query_id(attempt_index)
        with logging_context(query_id=query_id, procedure=procedure, connection=options.connection):
            return await self._execute(procedure, params, options, query_id)

    async def _execute(
        self,
        procedure: str,
        params: List[Any],
        options: ResolvedCallOptions,
        query_id: str
    ) -> ExecutionResult:
        connection = options.connection
        logging_enabled = options.logging_enabled
        start = self.clock()

        sql = self.skeletons.get(procedure, len(params))

        if options.check_procedure_exists:
            if not await self.existence.exists(procedure, connection, logging_enabled, options.cancel_event):
                raise ProcedureNotFoundError(procedure, connection)

        session = await self.pool.acquire(connection, options.cancel_event)
        self.events.query_started({
            "query_id": query_id,
            "sql": sql,
            "parameters": params,
            "connection": connection,
            "timestamp": wall_time().isoformat(),
        }, logging_enabled)

        try:
            statement = await session.handle.prepare(sql)
            try:
                if self.perf.query_timeout_enabled:
                    await self.timeouts.apply(
                        session.handle, statement, options.timeout_ms, connection, logging_enabled
                    )
                await statement.execute(params)
                result_sets = await fetch_result_sets(statement)
            finally:
                await self._close_statement(statement)
        except Exception as e:
            self.events.query_failed({
                "query_id": query_id,
                "sql": sql,
                "parameters": params,
                "execution_time_ms": round(self.clock() - start, 3),
                "connection": connection,
                "error_message": error_message(e),
                "error_code": error_code(e),
                "timestamp": wall_time().isoformat(),
            }, logging_enabled)
            raise
        finally:
            await self.pool.release(session)

        execution_time_ms = self.clock() - start
        result = ExecutionResult(
            result_sets=result_sets,
            sql=sql,
            params=params,
            connection=connection,
            query_id=query_id,
            execution_time_ms=execution_time_ms,
        )

        self.metrics.record(procedure, execution_time_ms, result.result_sets_count, result.rows)

        self.events.query_completed({
            "query_id": query_id,
            "sql": sql,
            "parameters": params,
            "execution_time_ms": round(execution_time_ms, 3),
            "result_sets": result.result_sets_count,
            "connection": connection,
            "timestamp": wall_time().isoformat(),
        }, logging_enabled)

        if execution_time_ms > self.perf.slow_query_threshold_ms:
            self.events.slow_query({
                "sql": sql,
                "parameters": params,
                "execution_time_ms": round(execution_time_ms, 3),
                "threshold_ms": self.perf.slow_query_threshold_ms,
                "connection": connection,
            }, logging_enabled)

        return result

    async def _close_statement(self, statement: Statement) -> None:
        try:
            await statement.close()
        except Exception as e:
            logger.warning(f"Error closing statement: {e}")
