"""
Retry controller for stored-procedure calls.

Attempts run in a plain loop. After each failure the classifier decides
whether to try again; connection faults empty the pool before the backoff
sleep so the next attempt starts on a fresh session.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .classifier import ErrorClassification, classify
from .clock import JitterSource, SleepFunc, monotonic_ms, sleep_ms, wall_time
from .config import ResolvedCallOptions
from .engine import ExecutionEngine, ExecutionResult
from .errors import CallCancelledError, ErrorKind, StoredProcedureCallError
from .events import EventLogger
from .metrics import RuntimeCollectors
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

JITTER_LOW = 0.5
JITTER_HIGH = 1.5


class BackoffPolicy:
    """Exponential backoff with multiplicative jitter."""

    def __init__(self, jitter: Optional[JitterSource] = None):
        self.jitter = jitter or JitterSource()

    @staticmethod
    def nominal(base_delay_ms: int, attempt: int) -> float:
        """Nominal delay before retry number ``attempt`` (1-based)."""
        return float(base_delay_ms * 2 ** (attempt - 1))

    def delay(self, base_delay_ms: int, attempt: int, max_delay_ms: int) -> float:
        """Jittered delay, capped at max_delay_ms.

        Args:
            base_delay_ms: Backoff baseline
            attempt: 1-based number of the failed attempt
            max_delay_ms: Cap for a single delay

        Returns:
            The delay in milliseconds
        """
        jittered = self.nominal(base_delay_ms, attempt) * self.jitter.uniform(JITTER_LOW, JITTER_HIGH)
        return max(0.0, min(jittered, float(max_delay_ms)))


@dataclass
class AttemptRecord:
    """One entry of a call's execution history."""

    attempt: int
    success: bool
    time_ms: float
    timestamp: float
    result_sets_count: Optional[int] = None
    message: Optional[str] = None
    code: Optional[Any] = None
    kind: Optional[ErrorKind] = None
    retryable: Optional[bool] = None
    delay_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "attempt": self.attempt,
            "success": self.success,
            "time_ms": round(self.time_ms, 3),
            "timestamp": self.timestamp,
        }
        if self.success:
            data["result_sets_count"] = self.result_sets_count
        else:
            data["message"] = self.message
            data["code"] = self.code
            data["kind"] = self.kind.value if self.kind else None
            data["retryable"] = self.retryable
            if self.delay_ms is not None:
                data["delay_ms"] = round(self.delay_ms, 3)
        return data


@dataclass
class RetryOutcome:
    """Result of running a call through the retry controller."""

    success: bool
    history: List[AttemptRecord]
    total_time_ms: float
    result: Optional[ExecutionResult] = None
    error: Optional[StoredProcedureCallError] = None
    cause: Optional[BaseException] = None
    classification: Optional[ErrorClassification] = None

    @property
    def total_attempts(self) -> int:
        return len(self.history)

    @property
    def successful_attempts(self) -> int:
        return sum(1 for record in self.history if record.success)

    @property
    def failed_attempts(self) -> int:
        return sum(1 for record in self.history if not record.success)


class RetryController:
    """Loops engine attempts under the classifier's verdict."""

    def __init__(
        self,
        engine: ExecutionEngine,
        pool: ConnectionPool,
        events: EventLogger,
        backoff: Optional[BackoffPolicy] = None,
        sleep: SleepFunc = sleep_ms,
        clock: Callable[[], float] = monotonic_ms,
        collectors: Optional[RuntimeCollectors] = None
    ):
        self.engine = engine
        self.pool = pool
        self.events = events
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep
        self.clock = clock
        self.collectors = collectors

    async def run(self, procedure: str, params: Sequence[Any], options: ResolvedCallOptions) -> RetryOutcome:
        """Run a call until it succeeds or can no longer be retried.

        Args:
            procedure: The procedure name
            params: Positional parameters
            options: Resolved call options

        Returns:
            The outcome with the full attempt history
        """
        attempt = 0
        history: List[AttemptRecord] = []
        start = self.clock()

        while True:
            attempt_start = self.clock()
            try:
                result = await self.engine.execute(procedure, params, options, attempt)
            except Exception as e:
                attempt += 1
                verdict = classify(e)
                record = AttemptRecord(
                    attempt=attempt,
                    success=False,
                    time_ms=self.clock() - attempt_start,
                    timestamp=wall_time().timestamp(),
                    message=verdict.message,
                    code=verdict.code,
                    kind=verdict.kind,
                    retryable=verdict.retryable,
                )
                history.append(record)

                if attempt > options.max_attempts or not verdict.retryable:
                    return self._fail(procedure, e, verdict, history, start, options)

                if options.cancelled:
                    cancelled = CallCancelledError("Stored procedure call cancelled before retry")
                    cancelled.__cause__ = e
                    return self._fail(procedure, cancelled, classify(cancelled), history, start, options)

                self.events.retry_attempt({
                    "procedure": procedure,
                    "attempt": attempt,
                    "max_attempts": options.max_attempts,
                    "error_message": verdict.message,
                    "error_code": verdict.code,
                    "retryable": verdict.retryable,
                    "connection_error": verdict.is_connection_fault,
                }, options.logging_enabled)
                if self.collectors is not None:
                    self.collectors.observe_retry(procedure, verdict.kind.value)

                if verdict.is_connection_fault:
                    await self.pool.close_all(reason="connection_fault")

                record.delay_ms = self.backoff.delay(options.base_delay_ms, attempt, options.max_delay_ms)
                logger.debug(f"Retrying {procedure} in {record.delay_ms:.1f}ms (attempt {attempt}/{options.max_attempts})")
                await self.sleep(record.delay_ms)
                continue

            history.append(AttemptRecord(
                attempt=attempt + 1,
                success=True,
                time_ms=self.clock() - attempt_start,
                timestamp=wall_time().timestamp(),
                result_sets_count=result.result_sets_count,
            ))
            return RetryOutcome(
                success=True,
                history=history,
                total_time_ms=self.clock() - start,
                result=result,
            )

    def _fail(
        self,
        procedure: str,
        cause: BaseException,
        verdict: ErrorClassification,
        history: List[AttemptRecord],
        start: float,
        options: ResolvedCallOptions
    ) -> RetryOutcome:
        error = StoredProcedureCallError(
            procedure=procedure,
            attempts=len(history),
            cause_message=verdict.message,
            code=verdict.code,
            kind=verdict.kind,
        )
        error.__cause__ = cause
        self.events.call_failed(error.message, {
            "procedure": procedure,
            "connection": options.connection,
            "attempts": len(history),
            "error_message": verdict.message,
            "error_code": verdict.code,
            "kind": verdict.kind.value,
        }, options.logging_enabled)
        return RetryOutcome(
            success=False,
            history=history,
            total_time_ms=self.clock() - start,
            error=error,
            cause=cause,
            classification=verdict,
        )
