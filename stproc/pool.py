"""
Bounded session pool with liveness validation and idle eviction.

Sessions are keyed by logical connection name and process id so a forked child
never reuses its parent's sockets. All bookkeeping happens in short critical
sections under a threading lock; validation, creation and closing run outside
of it.
"""

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .clock import SleepFunc, monotonic_ms, sleep_ms
from .config import PoolConfig
from .drivers.base import DatabaseSession, SessionFactory
from .errors import CallCancelledError, ConnectionCreateError, ErrorKind, PoolTimeoutError, StoredProcedureError
from .events import EventLogger

logger = logging.getLogger(__name__)

WAIT_INTERVAL_MS = 100.0
CREATE_BACKOFF_MS = 100.0


@dataclass(eq=False)
class PooledSession:
    """A session owned by the pool and loaned to at most one execution."""

    connection_name: str
    connection_key: str
    handle: DatabaseSession
    generation: int
    created_at: float
    last_used_at: float
    in_use: bool = False
    use_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def mark_used(self, now: float) -> None:
        self.in_use = True
        self.last_used_at = now
        self.use_count += 1

    def mark_free(self, now: float) -> None:
        self.in_use = False
        self.last_used_at = now

    def idle_for(self, now: float) -> float:
        return now - self.last_used_at


class ConnectionPool:
    """Process-wide pool of database sessions."""

    def __init__(
        self,
        factory: SessionFactory,
        config: Optional[PoolConfig] = None,
        events: Optional[EventLogger] = None,
        clock: Callable[[], float] = monotonic_ms,
        sleep: SleepFunc = sleep_ms,
        pid_func: Callable[[], int] = os.getpid
    ):
        """Initialize the pool.

        Args:
            factory: Opens new sessions for logical connection names
            config: Pool configuration
            events: Event sink
            clock: Monotonic clock in milliseconds
            sleep: Awaitable sleep taking milliseconds
            pid_func: Returns the current process id
        """
        self.factory = factory
        self.config = config or PoolConfig()
        self.events = events or EventLogger()
        self.clock = clock
        self.sleep = sleep
        self.pid_func = pid_func

        self._lock = threading.Lock()
        self._idle: Dict[str, List[PooledSession]] = {}
        self._loaned: Dict[int, PooledSession] = {}
        self._creating = 0
        self._generation = 0
        self._last_used: Dict[str, float] = {}

        self.metrics = {
            "created": 0,
            "create_failures": 0,
            "validation_failures": 0,
            "idle_evictions": 0,
            "resets": 0,
            "acquire_timeouts": 0,
        }

    def connection_key(self, connection_name: str) -> str:
        return f"{connection_name}:{self.pid_func()}"

    @property
    def max_connections(self) -> int:
        return self.config.max_connections

    @property
    def current_size(self) -> int:
        with self._lock:
            return self._current_size_locked()

    def _current_size_locked(self) -> int:
        idle = sum(len(sessions) for sessions in self._idle.values())
        loaned = sum(1 for s in self._loaned.values() if s.generation == self._generation)
        return idle + loaned + self._creating

    async def acquire(self, connection_name: str, cancel_event: Optional[asyncio.Event] = None) -> PooledSession:
        """Borrow a session for a logical connection.

        An idle session is validated with a trivial round-trip before it is
        handed out. When the pool is full, the caller waits in short sleeps
        until a slot frees or the acquire timeout elapses.

        Args:
            connection_name: The logical connection name
            cancel_event: Optional cancellation signal checked before each wait

        Returns:
            The borrowed session

        Raises:
            PoolTimeoutError: If no slot freed up in time
            CallCancelledError: If the caller cancelled while waiting
        """
        key = self.connection_key(connection_name)
        deadline = self.clock() + self.config.acquire_timeout_ms

        while True:
            await self.cleanup_idle()

            candidate: Optional[PooledSession] = None
            evicted: Optional[PooledSession] = None
            reserved = False
            with self._lock:
                idle = self._idle.get(key)
                if idle:
                    candidate = idle.pop()
                    candidate.in_use = True
                    self._loaned[id(candidate)] = candidate
                elif self._current_size_locked() < self.config.max_connections:
                    self._creating += 1
                    reserved = True
                else:
                    # Full, but another connection name may be holding idle slots.
                    evicted = self._pop_foreign_idle_locked(key)
                    if evicted is not None:
                        self._creating += 1
                        reserved = True

            if evicted is not None:
                try:
                    await self._close_handle(evicted)
                except BaseException:
                    with self._lock:
                        self._creating -= 1
                    raise

            if candidate is not None:
                try:
                    valid = await self._validate(candidate)
                except BaseException:
                    # Cancelled mid-validation; the session is in an unknown state.
                    with self._lock:
                        self._loaned.pop(id(candidate), None)
                    await self._close_handle(candidate)
                    raise
                if valid:
                    candidate.mark_used(self.clock())
                    return candidate
                with self._lock:
                    self._loaned.pop(id(candidate), None)
                    self.metrics["validation_failures"] += 1
                await self._close_handle(candidate)
                continue

            if reserved:
                return await self._create(connection_name, key)

            if cancel_event is not None and cancel_event.is_set():
                raise CallCancelledError("Stored procedure call cancelled while waiting for a connection")

            remaining = deadline - self.clock()
            if remaining <= 0:
                with self._lock:
                    self.metrics["acquire_timeouts"] += 1
                    size = self._current_size_locked()
                self.events.pool_acquire_timeout({
                    "connection": connection_name,
                    "current_pool_size": size,
                    "max_connections": self.config.max_connections,
                    "acquire_timeout_ms": self.config.acquire_timeout_ms,
                })
                raise PoolTimeoutError()

            await self.sleep(min(WAIT_INTERVAL_MS, remaining))

    def _pop_foreign_idle_locked(self, key: str) -> Optional[PooledSession]:
        oldest: Optional[PooledSession] = None
        for other_key, sessions in self._idle.items():
            if other_key == key or not sessions:
                continue
            if oldest is None or sessions[0].last_used_at < oldest.last_used_at:
                oldest = sessions[0]
        if oldest is not None:
            self._idle[oldest.connection_key].remove(oldest)
        return oldest

    async def _validate(self, session: PooledSession) -> bool:
        try:
            await session.handle.ping()
            return True
        except Exception as e:
            logger.warning(f"Discarding dead session for {session.connection_name}: {e}")
            return False

    async def _create(self, connection_name: str, key: str) -> PooledSession:
        attempts = self.config.create_retry_attempts
        last_error: Optional[BaseException] = None
        handle: Optional[DatabaseSession] = None

        try:
            for attempt in range(1, attempts + 1):
                try:
                    handle = await self.factory.connect(connection_name)
                    break
                except StoredProcedureError as e:
                    if e.kind == ErrorKind.NON_RETRYABLE:
                        raise
                    last_error = e
                except Exception as e:
                    last_error = e

                logger.warning(
                    f"Failed to create session for {connection_name} "
                    f"(attempt {attempt}/{attempts}): {last_error}"
                )
                if attempt < attempts:
                    await self.sleep(attempt * CREATE_BACKOFF_MS)
        except BaseException:
            with self._lock:
                self._creating -= 1
                self.metrics["create_failures"] += 1
            raise

        now = self.clock()
        with self._lock:
            self._creating -= 1
            if handle is None:
                self.metrics["create_failures"] += 1
            else:
                session = PooledSession(
                    connection_name=connection_name,
                    connection_key=key,
                    handle=handle,
                    generation=self._generation,
                    created_at=now,
                    last_used_at=now,
                )
                session.mark_used(now)
                self._loaned[id(session)] = session
                self._last_used[connection_name] = time.time()
                self.metrics["created"] += 1
                size = self._current_size_locked()

        if handle is None:
            if last_error is not None:
                raise last_error
            raise ConnectionCreateError(f"Unable to create database connection '{connection_name}'")

        self.events.connection_created({
            "connection": connection_name,
            "connection_key": key,
            "current_pool_size": size,
            "max_connections": self.config.max_connections,
        })
        return session

    async def release(self, session: PooledSession) -> None:
        """Return a borrowed session to the pool.

        Releasing a session that is not on loan is a no-op. A session borrowed
        before the last close_all() is closed instead of being kept.

        Args:
            session: The borrowed session
        """
        with self._lock:
            if self._loaned.pop(id(session), None) is None:
                return
            session.mark_free(self.clock())
            self._last_used[session.connection_name] = time.time()
            stale = session.generation != self._generation
            if not stale:
                self._idle.setdefault(session.connection_key, []).append(session)

        if stale:
            await self._close_handle(session)

    async def cleanup_idle(self) -> int:
        """Evict idle sessions unused for longer than the idle timeout.

        Returns:
            The number of sessions evicted
        """
        now = self.clock()
        expired: List[PooledSession] = []
        with self._lock:
            for key, sessions in self._idle.items():
                keep = []
                for session in sessions:
                    if session.idle_for(now) > self.config.idle_timeout_ms:
                        expired.append(session)
                    else:
                        keep.append(session)
                self._idle[key] = keep
            self.metrics["idle_evictions"] += len(expired)
            size = self._current_size_locked() if expired else 0

        if not expired:
            return 0

        for session in expired:
            await self._close_handle(session)
        self.events.connection_idle_cleanup({
            "removed": len(expired),
            "connections": sorted({s.connection_name for s in expired}),
            "current_pool_size": size,
            "idle_timeout_ms": self.config.idle_timeout_ms,
        })
        return len(expired)

    async def close_all(self, reason: str = "reset") -> int:
        """Drop every pooled session.

        Idle sessions are closed now; sessions on loan are forgotten and closed
        when they come back.

        Args:
            reason: Why the pool is being emptied, for the pool_reset event

        Returns:
            The number of sessions dropped
        """
        with self._lock:
            idle = [s for sessions in self._idle.values() for s in sessions]
            loaned = sum(1 for s in self._loaned.values() if s.generation == self._generation)
            self._idle.clear()
            self._last_used.clear()
            self._generation += 1
            self.metrics["resets"] += 1

        for session in idle:
            await self._close_handle(session)

        dropped = len(idle) + loaned
        self.events.pool_reset({"reason": reason, "closed": len(idle), "dropped": dropped})
        return dropped

    async def _close_handle(self, session: PooledSession) -> None:
        try:
            await session.handle.close()
        except Exception as e:
            logger.warning(f"Error closing session for {session.connection_name}: {e}")

    def stats(self) -> Dict[str, Any]:
        """Get a snapshot of pool statistics.

        Returns:
            Dictionary of pool statistics
        """
        with self._lock:
            size = self._current_size_locked()
            idle = sum(len(sessions) for sessions in self._idle.values())
            usage = dict(self._last_used)
        max_connections = self.config.max_connections
        return {
            "current_pool_size": size,
            "max_connections": max_connections,
            "active_connections": size,
            "idle_connections": idle,
            "loaned_connections": size - idle,
            "pool_utilization_percent": round(size / max_connections * 100, 2),
            "connection_usage": usage,
        }
