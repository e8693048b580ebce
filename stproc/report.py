"""
Execution report assembly.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import ResolvedCallOptions, ServiceConfig
from .retry import RetryOutcome


def build_execution_report(
    procedure: str,
    params: List[Any],
    options: ResolvedCallOptions,
    outcome: RetryOutcome,
    config: ServiceConfig,
    raw_query: str,
    final_sql: str,
    pool_stats: Dict[str, Any],
    procedure_metrics: Optional[Dict[str, Any]],
    started_at: datetime,
    completed_at: datetime
) -> Dict[str, Any]:
    """Build the execution report of a finished call.

    Args:
        procedure: The procedure name
        params: The call's parameters
        options: The resolved call options
        outcome: The retry controller's outcome
        config: The service configuration
        raw_query: The CALL skeleton
        final_sql: The skeleton with parameters inlined, for diagnostics
        pool_stats: Pool statistics snapshot taken at completion
        procedure_metrics: Metrics of the procedure, if recorded
        started_at: Wall-clock start of the call
        completed_at: Wall-clock end of the call

    Returns:
        The report as a JSON-serialisable dictionary
    """
    result = outcome.result
    data = result.result_sets if result is not None else []
    threshold = config.perf.slow_query_threshold_ms

    report: Dict[str, Any] = {
        "success": outcome.success,
        "procedure": procedure,
        "parameters": list(params),
        "connection": options.connection,
        "data": data,
        "raw_query": raw_query,
        "query_parameters": list(params),
        "final_sql": final_sql,
        "execution_summary": {
            "total_time_ms": round(outcome.total_time_ms, 3),
            "total_attempts": outcome.total_attempts,
            "successful_attempts": outcome.successful_attempts,
            "failed_attempts": outcome.failed_attempts,
            "result_sets_count": len(data),
            "rows_affected": sum(len(result_set) for result_set in data),
        },
        "connection_pool": dict(pool_stats, connection_used=options.connection),
        "performance": {
            "is_slow_query": outcome.total_time_ms > threshold,
            "slow_query_threshold_ms": threshold,
            "procedure_metrics": procedure_metrics,
        },
        "retry_information": {
            "retry_enabled": options.max_attempts > 0,
            "execution_history": [record.to_dict() for record in outcome.history],
            "max_retry_attempts": options.max_attempts,
            "base_delay_ms": options.base_delay_ms,
        },
        "configuration": {
            "acquire_timeout_ms": config.pool.acquire_timeout_ms,
            "max_connections": config.pool.max_connections,
            "logging_enabled": options.logging_enabled,
            "cache_enabled": config.cache.procedure_exists_enabled,
        },
        "timestamp": {
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "timezone": started_at.tzname() or "UTC",
        },
    }

    if not outcome.success and outcome.error is not None:
        error = outcome.error
        report["error"] = {
            "message": error.message,
            "code": error.code,
            "kind": error.kind.value,
            "type": type(outcome.cause).__name__ if outcome.cause is not None else type(error).__name__,
            "retryable": error.retryable,
            "connection_error": error.connection_error,
        }

    return report
