"""
Metrics collection for observability.

Tracks call latency, outcomes, in-flight calls and retries.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque
import threading


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Counters
    calls_total: int = 0
    calls_success: int = 0
    calls_failed: int = 0
    calls_cancelled: int = 0
    retries: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # In-flight calls
    inflight: int = 0
    inflight_max: int = 0

    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector for a Remote.

    Usage:
        metrics = Metrics()

        start = metrics.start_call()
        # ... do work ...
        metrics.end_call(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._calls_total = 0
        self._calls_success = 0
        self._calls_failed = 0
        self._calls_cancelled = 0
        self._retries = 0

        self._inflight = 0
        self._inflight_max = 0

        # Latency samples (circular buffer)
        self._latencies: deque = deque(maxlen=max_latency_samples)

    def start_call(self) -> float:
        """
        Start tracking a call.

        Returns start timestamp for later end_call() call.
        """
        with self._lock:
            self._calls_total += 1
            self._inflight += 1
            self._inflight_max = max(self._inflight_max, self._inflight)

        return time.perf_counter()

    def end_call(
        self,
        start_time: float,
        success: bool = True,
        cancelled: bool = False,
    ) -> float:
        """
        End tracking a call.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000

        with self._lock:
            self._inflight -= 1

            if cancelled:
                self._calls_cancelled += 1
            elif success:
                self._calls_success += 1
                self._latencies.append(latency_ms)
            else:
                self._calls_failed += 1
                self._latencies.append(latency_ms)

        return latency_ms

    def record_retry(self):
        """Record a transparent retry of a failed call."""
        with self._lock:
            self._retries += 1

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)

                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(int(n * 0.50), n - 1)]
                latency_p95 = sorted_latencies[min(int(n * 0.95), n - 1)]
                latency_p99 = sorted_latencies[min(int(n * 0.99), n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return MetricsSnapshot(
                calls_total=self._calls_total,
                calls_success=self._calls_success,
                calls_failed=self._calls_failed,
                calls_cancelled=self._calls_cancelled,
                retries=self._retries,
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                inflight=self._inflight,
                inflight_max=self._inflight_max,
            )

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._calls_total = 0
            self._calls_success = 0
            self._calls_failed = 0
            self._calls_cancelled = 0
            self._retries = 0
            self._inflight = 0
            self._inflight_max = 0
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        finished = snapshot.calls_success + snapshot.calls_failed
        return {
            "calls": {
                "total": snapshot.calls_total,
                "success": snapshot.calls_success,
                "failed": snapshot.calls_failed,
                "cancelled": snapshot.calls_cancelled,
                "retries": snapshot.retries,
                "error_rate": (
                    snapshot.calls_failed / finished if finished > 0 else 0.0
                ),
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "inflight": {
                "current": snapshot.inflight,
                "max": snapshot.inflight_max,
            },
        }
