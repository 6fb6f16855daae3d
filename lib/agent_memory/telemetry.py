"""Telemetry and metrics for the agent memory engine.

Every measurement is kept in-process by ``SimpleMetrics`` (for snapshots and
tests) and mirrored to OpenTelemetry instruments. Without a configured SDK
the OpenTelemetry meter is a no-op.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opentelemetry import metrics as otel_metrics


@dataclass
class MetricSnapshot:
    """Point-in-time snapshot of metrics."""
    timestamp: datetime
    counters: Dict[str, int]
    histograms: Dict[str, list]
    gauges: Dict[str, float]


class SimpleMetrics:
    """In-process counters, histograms and gauges keyed by name and labels."""

    HISTOGRAM_CAP = 1000

    def __init__(self):
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, list] = {}
        self._gauges: Dict[str, float] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None):
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def record(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._make_key(name, labels)
        with self._lock:
            values = self._histograms.setdefault(key, [])
            values.append(value)
            if len(values) > self.HISTOGRAM_CAP:
                del values[:-self.HISTOGRAM_CAP]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._gauges[self._make_key(name, labels)] = value

    def _make_key(self, name: str, labels: Optional[Dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ','.join(f'{k}={v}' for k, v in sorted(labels.items()))
        return f'{name}{{{label_str}}}'

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        return self._counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._make_key(name, labels))

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        values = self._histograms.get(self._make_key(name, labels), [])
        if not values:
            return {'count': 0, 'min': 0, 'max': 0, 'avg': 0, 'p50': 0, 'p95': 0}

        sorted_vals = sorted(values)
        count = len(sorted_vals)
        return {
            'count': count,
            'min': sorted_vals[0],
            'max': sorted_vals[-1],
            'avg': sum(sorted_vals) / count,
            'p50': sorted_vals[int(count * 0.5)],
            'p95': sorted_vals[int(count * 0.95)] if count > 20 else sorted_vals[-1],
        }

    def snapshot(self) -> MetricSnapshot:
        with self._lock:
            return MetricSnapshot(
                timestamp=datetime.now(timezone.utc),
                counters=dict(self._counters),
                histograms={k: list(v) for k, v in self._histograms.items()},
                gauges=dict(self._gauges),
            )

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()


class MemoryMetrics:
    """Metrics collector for the memory engine."""

    EDGES_APPENDED = 'agent_memory.edges.appended'
    EDGES_INVALIDATED = 'agent_memory.edges.invalidated'
    INVALIDATION_RACES = 'agent_memory.edges.invalidation_races'
    APPEND_CONFLICTS = 'agent_memory.edges.append_conflicts'

    ADMISSIONS = 'agent_memory.curation.admissions'
    REJECTIONS = 'agent_memory.curation.rejections'

    FEEDBACK_EVENTS = 'agent_memory.rules.feedback'
    RULES_INVERTED = 'agent_memory.rules.inverted'
    RULES_RETIRED = 'agent_memory.rules.retired'
    SWEEP_DURATION = 'agent_memory.sweep.duration_ms'
    RULES_SCANNED = 'agent_memory.sweep.rules_scanned'

    RETRIEVALS = 'agent_memory.retrieval.requests'
    RETRIEVAL_LATENCY = 'agent_memory.retrieval.latency_ms'
    RETRIEVAL_RESULTS = 'agent_memory.retrieval.results'

    BACKEND_ERRORS = 'agent_memory.backend.errors'

    def __init__(self, service_name: str = 'agent-memory'):
        self._service_name = service_name
        self._metrics = SimpleMetrics()
        self._meter = otel_metrics.get_meter(service_name)
        self._otel_counters: Dict[str, Any] = {}
        self._otel_histograms: Dict[str, Any] = {}

    @property
    def local(self) -> SimpleMetrics:
        return self._metrics

    def _count(self, name: str, labels: Optional[Dict[str, str]] = None, value: int = 1):
        self._metrics.increment(name, value, labels=labels)
        counter = self._otel_counters.get(name)
        if counter is None:
            counter = self._meter.create_counter(name)
            self._otel_counters[name] = counter
        counter.add(value, attributes=labels or {})

    def _observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        self._metrics.record(name, value, labels=labels)
        histogram = self._otel_histograms.get(name)
        if histogram is None:
            histogram = self._meter.create_histogram(name)
            self._otel_histograms[name] = histogram
        histogram.record(value, attributes=labels or {})

    def record_append(self, kind: str):
        self._count(self.EDGES_APPENDED, {'kind': kind})

    def record_append_conflict(self):
        self._count(self.APPEND_CONFLICTS)

    def record_invalidation(self, success: bool):
        if success:
            self._count(self.EDGES_INVALIDATED)
        else:
            self._count(self.INVALIDATION_RACES)

    def record_admission(self, kind: str):
        self._count(self.ADMISSIONS, {'kind': kind})

    def record_rejection(self, reason: str):
        self._count(self.REJECTIONS, {'reason': reason})

    def record_feedback(self, polarity: str):
        self._count(self.FEEDBACK_EVENTS, {'polarity': polarity})

    def record_retired(self, scope: str, count: int):
        if count:
            self._count(self.RULES_RETIRED, {'scope': scope}, value=count)

    def record_sweep(self, scanned: int, inverted: int, duration_ms: float):
        self._count(self.RULES_SCANNED, value=scanned)
        if inverted:
            self._count(self.RULES_INVERTED, value=inverted)
        self._observe(self.SWEEP_DURATION, duration_ms)

    def record_retrieval(self, result_count: int, latency_ms: float):
        self._count(self.RETRIEVALS)
        self._observe(self.RETRIEVAL_LATENCY, latency_ms)
        self._metrics.set_gauge(self.RETRIEVAL_RESULTS, result_count)

    def record_backend_error(self, operation: str):
        self._count(self.BACKEND_ERRORS, {'operation': operation})

    def get_summary(self) -> Dict[str, Any]:
        snapshot = self._metrics.snapshot()
        return {
            'timestamp': snapshot.timestamp.isoformat(),
            'service': self._service_name,
            'counters': snapshot.counters,
            'gauges': snapshot.gauges,
            'histograms': {
                name: self._metrics.get_histogram_stats(name)
                for name in snapshot.histograms
            },
        }

    def reset(self):
        self._metrics.reset()


_metrics: Optional[MemoryMetrics] = None


def get_metrics() -> MemoryMetrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = MemoryMetrics()
    return _metrics


def init_metrics(service_name: str = 'agent-memory') -> MemoryMetrics:
    """Initialize the global metrics instance."""
    global _metrics
    _metrics = MemoryMetrics(service_name)
    return _metrics
