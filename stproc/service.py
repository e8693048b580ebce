"""
Stored-procedure service.

StoredProcedureService wires the pool, engine, retry controller and metrics
together and exposes the two public entry points:

- call(): returns the list of result sets, raises on failure
- call_with_info(): returns an execution report, never raises on database errors

Services are normally constructed and injected. get_instance() offers a
process-wide instance for hosts that want a global accessor.
"""

import logging
import os
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .cache import CacheBackend, InMemoryCache
from .clock import JitterSource, SleepFunc, monotonic_ms, sleep_ms, wall_time
from .config import CallOptions, ResolvedCallOptions, ServiceConfig
from .config_sources import load_config
from .drivers.base import SessionFactory
from .drivers.mysql import MySqlSessionFactory
from .engine import ExecutionEngine, ResultSet
from .errors import SingletonError
from .events import EventLogger
from .metrics import MetricsRegistry, RuntimeCollectors
from .pool import ConnectionPool
from .procedure_cache import ProcedureExistenceCache
from .report import build_execution_report
from .retry import BackoffPolicy, RetryController, RetryOutcome
from .sql import SqlSkeletonCache, render_final_sql, validate_procedure_name
from .timeouts import TimeoutApplier

logger = logging.getLogger(__name__)

Options = Union[CallOptions, Mapping[str, Any], None]


class StoredProcedureService:
    """Executes stored procedures with pooling, retries and reporting."""

    _instance: Optional["StoredProcedureService"] = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        session_factory: Optional[SessionFactory] = None,
        cache_backend: Optional[CacheBackend] = None,
        events: Optional[EventLogger] = None,
        clock: Callable[[], float] = monotonic_ms,
        sleep: SleepFunc = sleep_ms,
        jitter: Optional[JitterSource] = None,
        pid_func: Callable[[], int] = os.getpid
    ):
        """Initialize the service.

        Args:
            config: Configuration snapshot; defaults apply when omitted
            session_factory: Opens sessions; aiomysql-backed when omitted
            cache_backend: Existence cache store; in-memory when omitted
            events: Event sink; bound to config.logging when omitted
            clock: Monotonic clock in milliseconds
            sleep: Awaitable sleep taking milliseconds
            jitter: Random source for backoff jitter
            pid_func: Returns the current process id, for pool keys
        """
        self.config = config or ServiceConfig()

        if session_factory is None:
            session_factory = MySqlSessionFactory(self.config.connections)

        if cache_backend is None and self.config.cache.procedure_exists_enabled:
            cache_backend = InMemoryCache(
                max_size=10000,
                default_ttl=self.config.cache.procedure_exists_ttl_ms / 1000.0
            )

        self.events = events or EventLogger(self.config.logging)
        self.clock = clock
        self.pool = ConnectionPool(
            session_factory,
            self.config.pool,
            self.events,
            clock=clock,
            sleep=sleep,
            pid_func=pid_func,
        )
        self.skeletons = SqlSkeletonCache()
        self.metrics = MetricsRegistry(enabled=self.config.perf.profiling_enabled)
        self.collectors = RuntimeCollectors()
        self.existence = ProcedureExistenceCache(self.pool, self.config.cache, cache_backend, self.events)
        self.engine = ExecutionEngine(
            pool=self.pool,
            skeletons=self.skeletons,
            existence=self.existence,
            timeouts=TimeoutApplier(self.events),
            metrics=self.metrics,
            events=self.events,
            perf=self.config.perf,
            clock=clock,
        )
        self.retry = RetryController(
            engine=self.engine,
            pool=self.pool,
            events=self.events,
            backoff=BackoffPolicy(jitter),
            sleep=sleep,
            clock=clock,
            collectors=self.collectors,
        )
        self.closed = False

    @classmethod
    def get_instance(cls, **kwargs) -> "StoredProcedureService":
        """Get the process-wide service, creating it on first access.

        On first access the configuration is loaded from the environment
        unless a ``config`` keyword is given. Later calls ignore kwargs.
        """
        with cls._instance_lock:
            if cls._instance is None:
                if "config" not in kwargs:
                    kwargs["config"] = load_config()
                cls._instance = cls(**kwargs)
            return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        """Close every pooled session and discard the process-wide service."""
        with cls._instance_lock:
            instance, cls._instance = cls._instance, None
        if instance is not None:
            await instance.close()

    def __copy__(self):
        raise SingletonError(f"Cannot clone singleton {type(self).__name__}")

    def __deepcopy__(self, memo):
        raise SingletonError(f"Cannot clone singleton {type(self).__name__}")

    def __reduce_ex__(self, protocol):
        raise SingletonError(f"Cannot serialize singleton {type(self).__name__}")

    def __setstate__(self, state):
        raise SingletonError(f"Cannot unserialize singleton {type(self).__name__}")

    async def call(
        self,
        procedure: str,
        params: Optional[Sequence[Any]] = None,
        options: Options = None
    ) -> Union[List[ResultSet], Dict[str, Any]]:
        """Call a stored procedure.

        Args:
            procedure: The procedure name
            params: Positional scalar parameters
            options: Per-call overrides (connection, timeout_ms, retry settings,
                check_procedure_exists, return_execution_info, enable_logging,
                cancel_event)

        Returns:
            The result sets in server order, or the execution report when
            return_execution_info is set

        Raises:
            StoredProcedureCallError: If the call failed and no report was requested
        """
        validate_procedure_name(procedure)
        params = list(params or [])
        resolved = CallOptions.from_mapping(options).resolve(self.config)

        started_at = wall_time()
        outcome = await self.retry.run(procedure, params, resolved)
        completed_at = wall_time()

        self.collectors.observe_call(procedure, outcome.success, outcome.total_time_ms / 1000.0)
        self.collectors.set_pool_size(self.pool.current_size)

        if resolved.return_execution_info:
            return self._report(procedure, params, resolved, outcome, started_at, completed_at)
        if outcome.success:
            return outcome.result.result_sets
        raise outcome.error from outcome.cause

    async def call_with_info(
        self,
        procedure: str,
        params: Optional[Sequence[Any]] = None,
        options: Options = None
    ) -> Dict[str, Any]:
        """Call a stored procedure and return its execution report.

        Database errors become the report's ``error`` block. Programmer errors
        such as an invalid procedure name still raise.
        """
        call_options = CallOptions.from_mapping(options).model_copy(update={"return_execution_info": True})
        return await self.call(procedure, params, call_options)

    def final_sql(self, procedure: str, params: Optional[Sequence[Any]] = None) -> str:
        """Render the CALL statement with parameters inlined, for diagnostics only."""
        params = list(params or [])
        return render_final_sql(self.skeletons.get(procedure, len(params)), params)

    def _report(
        self,
        procedure: str,
        params: List[Any],
        options: ResolvedCallOptions,
        outcome: RetryOutcome,
        started_at,
        completed_at
    ) -> Dict[str, Any]:
        raw_query = self.skeletons.get(procedure, len(params))
        return build_execution_report(
            procedure=procedure,
            params=params,
            options=options,
            outcome=outcome,
            config=self.config,
            raw_query=raw_query,
            final_sql=render_final_sql(raw_query, params),
            pool_stats=self.pool.stats(),
            procedure_metrics=self.metrics.get(procedure),
            started_at=started_at,
            completed_at=completed_at,
        )

    def get_connection_pool_stats(self) -> Dict[str, Any]:
        return self.pool.stats()

    def get_performance_metrics(self) -> Dict[str, Dict[str, Any]]:
        return self.metrics.all()

    def clear_performance_metrics(self) -> None:
        self.metrics.clear()

    async def cleanup_idle_connections(self) -> int:
        """Evict idle sessions now instead of waiting for the next acquire."""
        return await self.pool.cleanup_idle()

    async def reset_pool(self) -> int:
        """Close every pooled session and forget cached existence answers."""
        await self.existence.clear()
        return await self.pool.close_all(reason="operator_reset")

    async def invalidate_procedure(self, procedure: str, connection: Optional[str] = None) -> None:
        """Forget the cached existence answer for a dropped or renamed procedure."""
        await self.existence.invalidate(procedure, connection or self.config.default_connection)

    async def get_existence_cache_stats(self) -> Dict[str, Any]:
        return await self.existence.stats()

    async def close(self) -> None:
        """Close every pooled session."""
        if self.closed:
            return
        self.closed = True
        dropped = await self.pool.close_all(reason="shutdown")
        logger.info(f"Stored procedure service closed, {dropped} pooled sessions dropped")
