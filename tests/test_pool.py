"""
Tests for the session pool.
"""

import asyncio
import time

import pytest
from pymysql.err import OperationalError

from stproc.clock import monotonic_ms, sleep_ms
from stproc.config import PoolConfig
from stproc.errors import CallCancelledError, ErrorKind, PoolTimeoutError, UnknownConnectionError
from stproc.events import EventLogger
from stproc.pool import ConnectionPool

from tests.conftest import events_named


class FakeClock:
    """Manually advanced monotonic clock in milliseconds."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def make_pool(factory, sleeper):
    """Build pools over the fake factory."""

    def _make(**kwargs) -> ConnectionPool:
        config = PoolConfig(**{k: v for k, v in kwargs.items() if k in PoolConfig.model_fields})
        return ConnectionPool(
            factory,
            config,
            EventLogger(),
            clock=kwargs.get("clock", monotonic_ms),
            sleep=kwargs.get("sleep", sleeper),
            pid_func=kwargs.get("pid_func", lambda: 4242),
        )

    return _make


@pytest.mark.asyncio
async def test_acquire_creates_then_reuses_with_validation(make_pool, factory, stp_logs):
    pool = make_pool(max_connections=3)

    session = await pool.acquire("mysql")
    assert session.connection_key == "mysql:4242"
    assert session.in_use
    assert pool.current_size == 1
    assert len(events_named(stp_logs, "connection_created")) == 1

    await pool.release(session)
    assert not session.in_use

    again = await pool.acquire("mysql")
    assert again is session
    assert session.handle.pings == 1
    assert len(factory.sessions) == 1


@pytest.mark.asyncio
async def test_cap_is_never_exceeded_and_extra_acquire_times_out(make_pool, stp_logs):
    pool = make_pool(max_connections=2, acquire_timeout_ms=50, sleep=sleep_ms)
    held = [await pool.acquire("mysql"), await pool.acquire("mysql")]
    before = pool.stats()

    start = time.monotonic()
    with pytest.raises(PoolTimeoutError) as exc_info:
        await pool.acquire("mysql")
    elapsed_ms = (time.monotonic() - start) * 1000

    assert str(exc_info.value) == "Connection pool timeout: Unable to acquire database connection"
    assert exc_info.value.kind == ErrorKind.INTERNAL
    assert 49 <= elapsed_ms < 500
    assert pool.stats() == before
    assert pool.current_size == 2 <= pool.max_connections
    assert len(events_named(stp_logs, "pool_acquire_timeout")) == 1
    assert len(held) == 2


@pytest.mark.asyncio
async def test_waiting_acquire_gets_released_session(make_pool):
    pool = make_pool(max_connections=1, acquire_timeout_ms=2000, sleep=sleep_ms)
    first = await pool.acquire("mysql")

    async def release_later():
        await asyncio.sleep(0.02)
        await pool.release(first)

    releaser = asyncio.create_task(release_later())
    second = await pool.acquire("mysql")
    await releaser

    assert second is first
    assert pool.current_size == 1


@pytest.mark.asyncio
async def test_concurrent_acquires_respect_the_cap(make_pool, factory):
    pool = make_pool(max_connections=3, acquire_timeout_ms=2000, sleep=sleep_ms)

    async def borrow():
        session = await pool.acquire("mysql")
        assert pool.current_size <= 3
        await asyncio.sleep(0.01)
        await pool.release(session)

    await asyncio.gather(*(borrow() for _ in range(10)))

    assert len(factory.sessions) <= 3
    assert pool.current_size <= 3


@pytest.mark.asyncio
async def test_repeated_release_is_a_noop(make_pool):
    pool = make_pool()
    session = await pool.acquire("mysql")

    await pool.release(session)
    await pool.release(session)

    stats = pool.stats()
    assert stats["current_pool_size"] == 1
    assert stats["idle_connections"] == 1


@pytest.mark.asyncio
async def test_dead_idle_session_is_discarded(make_pool, factory):
    pool = make_pool()
    session = await pool.acquire("mysql")
    await pool.release(session)
    session.handle.dead = True

    replacement = await pool.acquire("mysql")

    assert replacement is not session
    assert session.handle.closed
    assert pool.current_size == 1
    assert pool.metrics["validation_failures"] == 1


@pytest.mark.asyncio
async def test_idle_sessions_are_evicted(make_pool, stp_logs):
    clock = FakeClock()
    pool = make_pool(idle_timeout_ms=1000, clock=clock)
    session = await pool.acquire("mysql")
    await pool.release(session)

    clock.advance(999)
    assert await pool.cleanup_idle() == 0

    clock.advance(2)
    assert await pool.cleanup_idle() == 1
    assert session.handle.closed
    assert pool.current_size == 0

    cleanup = events_named(stp_logs, "connection_idle_cleanup")
    assert len(cleanup) == 1
    assert cleanup[0].fields["removed"] == 1


@pytest.mark.asyncio
async def test_acquire_sweeps_expired_sessions_first(make_pool, factory):
    clock = FakeClock()
    pool = make_pool(idle_timeout_ms=1000, clock=clock)
    old = await pool.acquire("mysql")
    await pool.release(old)
    clock.advance(5000)

    fresh = await pool.acquire("mysql")

    assert fresh is not old
    assert old.handle.closed
    assert old.handle.pings == 0


@pytest.mark.asyncio
async def test_close_all_drops_everything(make_pool, stp_logs):
    pool = make_pool(max_connections=5)
    sessions = [await pool.acquire("mysql") for _ in range(3)]
    await pool.release(sessions[0])
    await pool.release(sessions[1])

    dropped = await pool.close_all()

    assert dropped == 3
    assert pool.current_size == 0
    assert sessions[0].handle.closed and sessions[1].handle.closed
    assert not sessions[2].handle.closed
    assert events_named(stp_logs, "pool_reset")[0].fields["dropped"] == 3

    # A session on loan during close_all is closed when it comes back.
    await pool.release(sessions[2])
    assert sessions[2].handle.closed
    assert pool.current_size == 0


@pytest.mark.asyncio
async def test_create_retries_with_linear_backoff(make_pool, factory, sleeper):
    factory.connect_errors.extend([
        OperationalError(2003, "Can't connect to MySQL server"),
        OperationalError(2003, "Can't connect to MySQL server"),
    ])
    pool = make_pool(create_retry_attempts=3)

    session = await pool.acquire("mysql")

    assert session.handle is factory.sessions[0]
    assert sleeper.delays == [100, 200]


@pytest.mark.asyncio
async def test_create_exhaustion_surfaces_last_driver_error(make_pool, factory):
    factory.connect_errors.extend([
        OperationalError(2003, "first"),
        OperationalError(2003, "second"),
    ])
    pool = make_pool(create_retry_attempts=2)

    with pytest.raises(OperationalError) as exc_info:
        await pool.acquire("mysql")

    assert exc_info.value.args == (2003, "second")
    assert pool.current_size == 0
    assert pool.metrics["create_failures"] == 1


@pytest.mark.asyncio
async def test_unknown_connection_is_not_retried(make_pool, factory, sleeper):
    factory.connect_errors.append(UnknownConnectionError("warehouse"))
    pool = make_pool()

    with pytest.raises(UnknownConnectionError):
        await pool.acquire("warehouse")

    assert sleeper.delays == []
    assert pool.current_size == 0


@pytest.mark.asyncio
async def test_pool_key_includes_process_id(make_pool, factory):
    pid = {"value": 100}
    pool = make_pool(pid_func=lambda: pid["value"])
    parent = await pool.acquire("mysql")
    await pool.release(parent)

    pid["value"] = 101
    child = await pool.acquire("mysql")

    assert child is not parent
    assert child.connection_key == "mysql:101"
    assert parent.handle.pings == 0


@pytest.mark.asyncio
async def test_full_pool_reclaims_idle_slot_of_another_connection(make_pool, factory):
    pool = make_pool(max_connections=1, acquire_timeout_ms=50)
    other = await pool.acquire("reporting")
    await pool.release(other)

    session = await pool.acquire("mysql")

    assert session.connection_name == "mysql"
    assert other.handle.closed
    assert pool.current_size == 1


@pytest.mark.asyncio
async def test_cancellation_while_waiting(make_pool):
    pool = make_pool(max_connections=1, acquire_timeout_ms=5000)
    await pool.acquire("mysql")
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(CallCancelledError) as exc_info:
        await pool.acquire("mysql", cancel_event=cancel)

    assert exc_info.value.kind == ErrorKind.INTERNAL


@pytest.mark.asyncio
async def test_stats_snapshot(make_pool):
    pool = make_pool(max_connections=3)
    session = await pool.acquire("mysql")

    stats = pool.stats()

    assert stats["current_pool_size"] == 1
    assert stats["max_connections"] == 3
    assert stats["active_connections"] == 1
    assert stats["pool_utilization_percent"] == 33.33
    assert stats["loaned_connections"] == 1
    assert set(stats["connection_usage"]) == {"mysql"}
    await pool.release(session)


@pytest.mark.asyncio
async def test_cancelled_validation_frees_the_slot(make_pool, factory):
    pool = make_pool(max_connections=1)
    await pool.release(await pool.acquire("mysql"))
    factory.ping_delay_ms = 1000

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(pool.acquire("mysql"), timeout=0.01)

    stats = pool.stats()
    assert stats["loaned_connections"] == 0
    assert stats["current_pool_size"] == 0
    assert factory.sessions[0].closed

    factory.ping_delay_ms = 0
    replacement = await pool.acquire("mysql")
    assert replacement.handle is factory.sessions[1]


@pytest.mark.asyncio
async def test_cancelled_eviction_releases_the_reservation(make_pool, factory):
    pool = make_pool(max_connections=1)
    await pool.release(await pool.acquire("mysql"))
    factory.close_delay_ms = 1000

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(pool.acquire("reporting"), timeout=0.01)

    assert pool.current_size == 0

    factory.close_delay_ms = 0
    session = await pool.acquire("reporting")
    assert session.connection_name == "reporting"
    assert pool.current_size == 1
