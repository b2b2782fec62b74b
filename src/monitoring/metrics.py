"""
Metrics collection for ResolveChain.

Thread-safe counters, gauges and histograms with optional labels, exported
as JSON or in the Prometheus text format. Names used across the services:

    issues_created_total                    issue registry
    resolutions_created_total{status}       resolution engine
    attestations_total{outcome}             attestation gateway
    attestation_duration_ms                 submit -> confirmation latency
    ledger_previous_hash_mismatch_total     custody chain divergence
    verifications_total{result}             verification service
    hash_mismatch_total                     tampered evidence detected
    http_requests_total{method,path,status} request middleware
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

METRIC_PREFIX = "resolvechain_"

# Milliseconds. The upper buckets cover ledger confirmation waits.
DEFAULT_BUCKETS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 120000)


@dataclass
class HistogramBucket:
    """A histogram bucket for tracking value distributions."""

    le: float  # Less than or equal to
    count: int = 0


@dataclass
class Histogram:
    """Cumulative histogram of observed values."""

    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in DEFAULT_BUCKETS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "sum": self.sum,
            "avg": self.sum / self.count if self.count > 0 else 0,
            "buckets": {str(b.le): b.count for b in self.buckets},
        }


def _collapse(values: dict[str, Any]) -> Any:
    # An unlabelled series exports as a bare value
    if len(values) == 1 and "" in values:
        return values[""]
    return dict(values)


class MetricsCollector:
    """
    Thread-safe metrics collector.

    Label sets are flattened into a sorted 'k="v",...' key so they can be
    written straight into the Prometheus exposition format.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

    @staticmethod
    def _labels_key(labels: dict[str, str] | None) -> str:
        if not labels:
            return ""
        return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][self._labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(self._labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] = value

    def increment_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][self._labels_key(labels)] += value

    def decrement_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        self.increment_gauge(name, -value, labels)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(self._labels_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a timing observation in milliseconds."""
        with self._lock:
            key = self._labels_key(labels)
            histogram = self._histograms[name].get(key)
            if histogram is None:
                histogram = self._histograms[name][key] = Histogram(name=name)
            histogram.observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        """Context manager for timing code blocks."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: _collapse(v) for name, v in self._counters.items()},
                "gauges": {name: _collapse(v) for name, v in self._gauges.items()},
                "histograms": {
                    name: {(key or "_total"): hist.to_dict() for key, hist in series.items()}
                    for name, series in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = [
            f"# HELP {METRIC_PREFIX}uptime_seconds Time since application start",
            f"# TYPE {METRIC_PREFIX}uptime_seconds gauge",
            f"{METRIC_PREFIX}uptime_seconds {time.time() - self._start_time:.2f}",
            "",
        ]

        with self._lock:
            for kind, families in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in families.items():
                    metric_name = f"{METRIC_PREFIX}{name}"
                    lines.append(f"# TYPE {metric_name} {kind}")
                    for key, value in values.items():
                        labels = f"{{{key}}}" if key else ""
                        lines.append(f"{metric_name}{labels} {value}")
                    lines.append("")

            for name, series in self._histograms.items():
                metric_name = f"{METRIC_PREFIX}{name}"
                lines.append(f"# TYPE {metric_name} histogram")
                for key, hist in series.items():
                    prefix = f"{key}," if key else ""
                    labels = f"{{{key}}}" if key else ""
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        lines.append(f'{metric_name}_bucket{{{prefix}le="{le_val}"}} {bucket.count}')
                    lines.append(f"{metric_name}_sum{labels} {hist.sum:.2f}")
                    lines.append(f"{metric_name}_count{labels} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()


def increment(name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
    metrics.increment(name, value, labels)


def set_gauge(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    metrics.set_gauge(name, value, labels)


def timing(name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
    metrics.timing(name, value_ms, labels)


def timer(name: str, labels: dict[str, str] | None = None):
    return metrics.timer(name, labels)
