"""
Delivery Metrics — Prometheus + Internal Aggregates
====================================================

Metrics registry for one delivery manager.

Design:
  - One ``CollectorRegistry`` per collector, so independent managers (and
    tests) never collide on metric names
  - Prometheus counters / gauges / histograms for scraping
  - Internal counters and latency percentiles (p50, p95, p99) for the
    read-only summary the manager exposes

Metric Naming Convention:
  - courier_{component}_{metric}_{unit}
  - e.g., courier_delivery_latency_seconds
"""

from __future__ import annotations

import threading
from collections import Counter as TallyCounter
from collections import deque
from typing import Any

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from courier.core.types import CircuitStatus

_CIRCUIT_GAUGE_VALUE = {
    CircuitStatus.CLOSED: 0,
    CircuitStatus.HALF_OPEN: 1,
    CircuitStatus.OPEN: 2,
}

# ── Percentile Tracker ─────────────────────────────────────────────

class PercentileTracker:
    """Thread-safe rolling window percentile calculator with cached sorting."""

    __slots__ = ("_lock", "_sorted_cache", "_sorted_dirty", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._sorted_dirty = True
        self._sorted_cache: list[float] = []

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._sorted_dirty = True

    def percentile(self, p: float) -> float:
        """Get percentile value (0-100). Re-sorts only when data changed."""
        with self._lock:
            if not self._values:
                return 0.0
            if self._sorted_dirty:
                self._sorted_cache = sorted(self._values)
                self._sorted_dirty = False
            idx = int(len(self._sorted_cache) * p / 100)
            return self._sorted_cache[min(idx, len(self._sorted_cache) - 1)]

    @property
    def count(self) -> int:
        return len(self._values)

    def mean(self) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            return sum(self._values) / len(self._values)

# ── Delivery Metrics ───────────────────────────────────────────────

class DeliveryMetrics:
    """
    Counts, timings and queue depth for one delivery pipeline.

    Every ``record_*`` call updates both the Prometheus registry and the
    internal aggregates returned by ``summary()``.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._counts: TallyCounter[str] = TallyCounter()
        self._latency = PercentileTracker()
        self._wait = PercentileTracker()
        self._depth = 0
        self._peak_depth = 0
        self._active = 0

        self.requests = Counter(
            "courier_delivery_requests_total",
            "Delivery requests by lifecycle outcome",
            labelnames=["action", "outcome"],
            registry=self.registry,
        )
        self.retries = Counter(
            "courier_delivery_retries_total",
            "Retries scheduled, by error kind",
            labelnames=["action", "kind"],
            registry=self.registry,
        )
        self.latency = Histogram(
            "courier_delivery_latency_seconds",
            "Submit-to-success latency",
            labelnames=["action"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.queue_wait = Histogram(
            "courier_queue_wait_seconds",
            "Time between enqueue and first dispatch",
            buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "courier_queue_depth",
            "Live entries per priority bucket",
            labelnames=["priority"],
            registry=self.registry,
        )
        self.active = Gauge(
            "courier_queue_active",
            "Entries currently executing",
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "courier_circuit_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
            labelnames=["action"],
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def _count(self, action: str, outcome: str) -> None:
        self._counts[outcome] += 1
        self.requests.labels(action=action, outcome=outcome).inc()

    def record_submitted(self, action: str) -> None:
        self._count(action, "submitted")

    def record_deduped(self, action: str) -> None:
        self._count(action, "deduped")

    def record_superseded(self, action: str) -> None:
        self._count(action, "superseded")

    def record_retry(self, action: str, kind: str) -> None:
        self._counts["retried"] += 1
        self.retries.labels(action=action, kind=kind).inc()

    def record_success(self, action: str, latency_ms: float) -> None:
        self._count(action, "succeeded")
        self._latency.record(latency_ms)
        self.latency.labels(action=action).observe(latency_ms / 1000)

    def record_failure(self, action: str, kind: str) -> None:
        self._count(action, "failed")
        self._counts[f"failed_{kind}"] += 1

    def record_circuit_rejected(self, action: str) -> None:
        self._count(action, "circuit_rejected")

    def record_cancelled(self, action: str) -> None:
        self._count(action, "cancelled")

    def record_wait(self, wait_ms: float) -> None:
        self._wait.record(wait_ms)
        self.queue_wait.observe(wait_ms / 1000)

    def record_queue_depth(self, by_priority: dict[str, int], active: int) -> None:
        self._depth = sum(by_priority.values())
        self._peak_depth = max(self._peak_depth, self._depth)
        self._active = active
        for priority, depth in by_priority.items():
            self.queue_depth.labels(priority=priority).set(depth)
        self.active.set(active)

    def record_circuit_state(self, action: str, status: CircuitStatus) -> None:
        self.circuit_state.labels(action=action).set(_CIRCUIT_GAUGE_VALUE[status])

    # ── Read Access ────────────────────────────────────────────────

    def count(self, name: str) -> int:
        return self._counts[name]

    def summary(self) -> dict[str, Any]:
        """Complete read-only metrics snapshot."""
        return {
            "counts": {
                name: self._counts[name]
                for name in (
                    "submitted", "deduped", "superseded", "succeeded", "failed",
                    "retried", "circuit_rejected", "cancelled",
                )
            },
            "failures_by_kind": {
                name.removeprefix("failed_"): value
                for name, value in self._counts.items()
                if name.startswith("failed_")
            },
            "queue": {
                "depth": self._depth,
                "peak_depth": self._peak_depth,
                "active": self._active,
                "avg_wait_ms": round(self._wait.mean(), 2),
            },
            "latency_ms": {
                "p50": self._latency.percentile(50),
                "p95": self._latency.percentile(95),
                "p99": self._latency.percentile(99),
                "mean": round(self._latency.mean(), 2),
                "count": self._latency.count,
            },
        }

    def export_prometheus(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)
