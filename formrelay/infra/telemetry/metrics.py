"""
Dispatch Metrics — Prometheus Exposition + Latency Windows
============================================================

Every dispatch metric is declared once, in ``MetricsCollector.__init__``,
against a single registry (the process default, or one handed in by tests).

Exported families (``formrelay_dispatch_*``):
  - queue_depth, in_flight, workers_busy            gauges
  - queue_wait_seconds, delivery_latency_seconds    histograms
  - deliveries_total{endpoint,status}               counter
  - retries_total{endpoint}                         counter
  - terminal_failures_total{endpoint,state}         counter

Alongside Prometheus, each endpoint keeps a bounded window of recent
delivery latencies so ``/api/v1/status`` can report p50/p95/p99 without a
Prometheus server.
"""

from __future__ import annotations

import bisect
import threading
from collections import deque
from typing import Any

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Latency Window ─────────────────────────────────────────────────


class PercentileTracker:
    """Nearest-rank percentiles over the last ``window_size`` samples.

    A sorted copy of the window is maintained on insert, so reads never sort.
    """

    __slots__ = ("_lock", "_ordered", "_total", "_window")

    def __init__(self, window_size: int = 1000):
        self._window: deque[float] = deque(maxlen=window_size)
        self._ordered: list[float] = []
        self._total = 0.0
        self._lock = threading.Lock()

    def record(self, value: float) -> None:
        with self._lock:
            if len(self._window) == self._window.maxlen:
                evicted = self._window[0]
                del self._ordered[bisect.bisect_left(self._ordered, evicted)]
                self._total -= evicted
            self._window.append(value)
            bisect.insort(self._ordered, value)
            self._total += value

    def percentile(self, p: float) -> float:
        """Value at percentile ``p`` (0-100); 0.0 for an empty window."""
        with self._lock:
            n = len(self._ordered)
            if n == 0:
                return 0.0
            return self._ordered[min(int(n * p / 100), n - 1)]

    @property
    def count(self) -> int:
        return len(self._window)

    def mean(self) -> float:
        with self._lock:
            return self._total / len(self._window) if self._window else 0.0


# ── Collector ──────────────────────────────────────────────────────


class MetricsCollector:
    """Owns the dispatch metric families and the per-endpoint latency windows."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self._lock = threading.Lock()
        self._registry = registry
        self._latency_trackers: dict[str, PercentileTracker] = {}
        self._outcomes: dict[str, int] = {}

        # ── Queue Metrics ──
        self.queue_depth = Gauge(
            "formrelay_dispatch_queue_depth",
            "Work items waiting for a worker",
            registry=registry,
        )

        self.in_flight = Gauge(
            "formrelay_dispatch_in_flight",
            "Work items claimed but not yet completed",
            registry=registry,
        )

        self.queue_wait_time = Histogram(
            "formrelay_dispatch_queue_wait_seconds",
            "Time from enqueue to claim",
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
            registry=registry,
        )

        # ── Worker Metrics ──
        self.workers_busy = Gauge(
            "formrelay_dispatch_workers_busy",
            "Worker slots currently running a pipeline",
            registry=registry,
        )

        # ── Delivery Metrics ──
        self.deliveries = Counter(
            "formrelay_dispatch_deliveries_total",
            "Delivery attempts by outcome",
            labelnames=["endpoint", "status"],
            registry=registry,
        )

        self.delivery_latency = Histogram(
            "formrelay_dispatch_delivery_latency_seconds",
            "Downstream delivery latency",
            labelnames=["endpoint"],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=registry,
        )

        self.retries = Counter(
            "formrelay_dispatch_retries_total",
            "Retries scheduled",
            labelnames=["endpoint"],
            registry=registry,
        )

        self.terminal_failures = Counter(
            "formrelay_dispatch_terminal_failures_total",
            "Work items that reached a terminal failure state",
            labelnames=["endpoint", "state"],
            registry=registry,
        )

    # ── Recording ──────────────────────────────────────────────────

    def record_delivery(self, *, endpoint: str, status: str, latency_s: float) -> None:
        """Record one delivery attempt."""
        self._get_latency_tracker(endpoint).record(latency_s)
        self.deliveries.labels(endpoint=endpoint, status=status).inc()
        self.delivery_latency.labels(endpoint=endpoint).observe(latency_s)

    def record_queue(self, *, depth: int, in_flight: int) -> None:
        self.queue_depth.set(depth)
        self.in_flight.set(in_flight)

    def record_queue_wait(self, wait_s: float) -> None:
        self.queue_wait_time.observe(wait_s)

    def record_workers(self, busy: int) -> None:
        self.workers_busy.set(busy)

    def record_retry(self, endpoint: str) -> None:
        self.retries.labels(endpoint=endpoint).inc()

    def record_outcome(self, *, endpoint: str, state: str, terminal_failure: bool) -> None:
        with self._lock:
            self._outcomes[str(state)] = self._outcomes.get(str(state), 0) + 1
        if terminal_failure:
            self.terminal_failures.labels(endpoint=endpoint, state=state).inc()

    # ── Summaries ──────────────────────────────────────────────────

    def _get_latency_tracker(self, endpoint: str) -> PercentileTracker:
        if endpoint not in self._latency_trackers:
            with self._lock:
                if endpoint not in self._latency_trackers:
                    self._latency_trackers[endpoint] = PercentileTracker()
        return self._latency_trackers[endpoint]

    def get_latency_percentiles(self, endpoint: str) -> dict[str, float]:
        tracker = self._get_latency_tracker(endpoint)
        return {
            "p50": tracker.percentile(50),
            "p95": tracker.percentile(95),
            "p99": tracker.percentile(99),
            "mean": tracker.mean(),
            "count": tracker.count,
        }

    def get_summary(self) -> dict[str, Any]:
        """Get a metrics summary for the status endpoint."""
        with self._lock:
            outcomes = dict(self._outcomes)
            endpoints = list(self._latency_trackers)
        return {
            "outcomes": outcomes,
            "endpoints": {name: self.get_latency_percentiles(name) for name in endpoints},
        }

    def export_prometheus(self) -> bytes:
        return generate_latest(self._registry)


# ── Process Collector ──────────────────────────────────────────────

_metrics: MetricsCollector | None = None
_metrics_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """The collector bound to the default Prometheus registry, created on first use."""
    global _metrics
    if _metrics is None:
        with _metrics_lock:
            if _metrics is None:
                _metrics = MetricsCollector()
    return _metrics
