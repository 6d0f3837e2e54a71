"""
Metrics Collection for Evidence RAG

Tracks query outcomes, latency, and ingestion results in-process for the
/api/v1/metrics endpoint.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class QueryMetrics:
    """Metrics for a single query."""
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    outcome: Optional[str] = None
    sources_count: int = 0
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated system metrics."""
    total_queries: int = 0
    failed_queries: int = 0
    queries_by_outcome: dict = field(default_factory=lambda: defaultdict(int))
    sources_returned: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Ingestion
    documents_ingested: int = 0
    documents_failed: int = 0
    chunks_created: int = 0
    total_ingestion_time_ms: float = 0

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def error_rate(self) -> float:
        if self.total_queries == 0:
            return 0
        return self.failed_queries / self.total_queries

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "queries": {
                "total": self.total_queries,
                "failed": self.failed_queries,
                "error_rate": f"{self.error_rate:.2%}",
                "by_outcome": dict(self.queries_by_outcome),
                "sources_returned": self.sources_returned,
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
            },
            "ingestion": {
                "documents": self.documents_ingested,
                "failed": self.documents_failed,
                "chunks": self.chunks_created,
                "avg_time_ms": round(
                    self.total_ingestion_time_ms / max(self.documents_ingested, 1), 2
                ),
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_query() as tracker:
            answer = engine.answer(...)
            tracker.set_outcome(answer.outcome.value, len(answer.sources))
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._max_history = 1000
        self._start_time = datetime.now()
        self._lock = threading.Lock()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking query metrics."""

        def __init__(self, collector: 'MetricsCollector'):
            self.collector = collector
            self.query = QueryMetrics(start_time=time.time())

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.query.end_time = time.time()
            self.query.latency_ms = (self.query.end_time - self.query.start_time) * 1000

            if exc_type:
                self.query.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_query(self.query)
            return False

        def set_outcome(self, outcome: str, sources_count: int = 0):
            self.query.outcome = outcome
            self.query.sources_count = sources_count

    def track_query(self) -> QueryTracker:
        return self.QueryTracker(self)

    def _record_query(self, query: QueryMetrics):
        with self._lock:
            self.metrics.total_queries += 1
            if query.error:
                self.metrics.failed_queries += 1
            elif query.outcome:
                self.metrics.queries_by_outcome[query.outcome] += 1
                self.metrics.sources_returned += query.sources_count

            self.metrics.total_latency_ms += query.latency_ms
            self.metrics.latencies.append(query.latency_ms)
            if len(self.metrics.latencies) > self._max_history:
                self.metrics.latencies = self.metrics.latencies[-self._max_history:]

    def _record_error(self, error_type: str):
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_ingestion(self, evidence_id: str, chunks_count: int, duration_ms: float):
        """Record a successful evidence ingestion."""
        with self._lock:
            self.metrics.documents_ingested += 1
            self.metrics.chunks_created += chunks_count
            self.metrics.total_ingestion_time_ms += duration_ms

    def record_ingestion_failure(self, evidence_id: str, error_type: str):
        with self._lock:
            self.metrics.documents_failed += 1
            self.metrics.errors_by_type[error_type] += 1

    def get_metrics_dict(self) -> dict:
        with self._lock:
            return self.metrics.to_dict()

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
