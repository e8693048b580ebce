"""
Per-procedure execution metrics.

MetricsRegistry keeps in-process aggregates that execution reports embed.
RuntimeCollectors exports the same activity through prometheus_client on a
private CollectorRegistry owned by each service instance.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


@dataclass
class ProcedureMetrics:
    """Aggregates for one procedure."""

    total_calls: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = 0.0
    max_time_ms: float = 0.0
    total_result_sets: int = 0
    total_rows: int = 0

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.total_calls if self.total_calls else 0.0

    def record(self, execution_time_ms: float, result_sets: int, rows: int) -> None:
        if self.total_calls == 0:
            self.min_time_ms = execution_time_ms
            self.max_time_ms = execution_time_ms
        else:
            self.min_time_ms = min(self.min_time_ms, execution_time_ms)
            self.max_time_ms = max(self.max_time_ms, execution_time_ms)
        self.total_calls += 1
        self.total_time_ms += execution_time_ms
        self.total_result_sets += result_sets
        self.total_rows += rows

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["avg_time_ms"] = self.avg_time_ms
        return data


class MetricsRegistry:
    """Thread-safe per-procedure metrics, recorded for successful executions only."""

    def __init__(self, enabled: bool = False):
        """Initialize the registry.

        Args:
            enabled: Whether recording is on; reads work either way
        """
        self.enabled = enabled
        self._lock = threading.Lock()
        self._metrics: Dict[str, ProcedureMetrics] = {}

    def record(self, procedure: str, execution_time_ms: float, result_sets: int, rows: int = 0) -> None:
        """Record one successful execution.

        Args:
            procedure: The procedure name
            execution_time_ms: Wall time of the execution
            result_sets: Number of result sets returned
            rows: Number of rows across all result sets
        """
        if not self.enabled:
            return
        with self._lock:
            self._metrics.setdefault(procedure, ProcedureMetrics()).record(execution_time_ms, result_sets, rows)

    def get(self, procedure: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            metrics = self._metrics.get(procedure)
            return metrics.to_dict() if metrics else None

    def all(self) -> Dict[str, Dict[str, Any]]:
        """Get a consistent snapshot of every procedure's metrics."""
        with self._lock:
            return {name: metrics.to_dict() for name, metrics in self._metrics.items()}

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()


class RuntimeCollectors:
    """Prometheus collectors for calls, retries and pool size."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.calls = Counter(
            'stproc_procedure_calls_total',
            'Stored procedure calls',
            ['procedure', 'status'],
            registry=self.registry
        )
        self.latency = Histogram(
            'stproc_procedure_latency_seconds',
            'Stored procedure call latency',
            ['procedure'],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
            registry=self.registry
        )
        self.retries = Counter(
            'stproc_retry_attempts_total',
            'Stored procedure retry attempts',
            ['procedure', 'kind'],
            registry=self.registry
        )
        self.pool_size = Gauge(
            'stproc_pool_size',
            'Live sessions held by the connection pool',
            registry=self.registry
        )

    def observe_call(self, procedure: str, success: bool, seconds: float) -> None:
        self.calls.labels(procedure=procedure, status="success" if success else "error").inc()
        self.latency.labels(procedure=procedure).observe(seconds)

    def observe_retry(self, procedure: str, kind: str) -> None:
        self.retries.labels(procedure=procedure, kind=kind).inc()

    def set_pool_size(self, size: int) -> None:
        self.pool_size.set(size)

    def export(self) -> bytes:
        """Render the collectors in the Prometheus text format."""
        return generate_latest(self.registry)
