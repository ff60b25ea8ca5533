"""
Metrics Collection Module
=========================

Process-local quality metrics for the pipeline:
- Per-feed last status, latency and failure counts
- Ingestion cycle counts and ticks per exchange
- Inference latency percentiles (p50, p95) via a rolling window
- Prediction and alert counters

Thread-safe for use across async tasks and worker threads.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Optional

from tickflow.types import FeedHealth
from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

# Rolling window sizes
LATENCY_WINDOW_SECONDS = 3600
LATENCY_WINDOW_MAXLEN = 10_000


def percentile(sorted_values: list[float], q: float) -> Optional[float]:
    """Nearest-rank percentile over an ascending list (``values[floor(n*q)]``)."""
    if not sorted_values:
        return None
    n = len(sorted_values)
    return sorted_values[min(int(n * q), n - 1)]


class Metrics:
    """
    Central metrics collection for the pipeline.

    Usage:
        metrics = Metrics()
        metrics.observe_feed(FeedHealth("binance", "connected", 12.5, 2))
        metrics.observe_inference(0.8, path="full")
        snapshot = metrics.snapshot()
    """

    def __init__(self):
        self._lock = threading.Lock()

        self._feed_status: dict[str, dict] = {}
        self._feed_failures_total: dict[str, int] = defaultdict(int)
        self._ticks_total: dict[str, int] = defaultdict(int)

        self._cycles_total: int = 0
        self._cycle_errors_total: int = 0
        self._last_cycle_ms: Optional[int] = None

        # Structure: {path: deque[(ts_sec, latency_ms)]}
        self._latency_window: dict[str, deque] = defaultdict(
            lambda: deque(maxlen=LATENCY_WINDOW_MAXLEN)
        )
        self._predictions_total: dict[str, int] = defaultdict(int)
        self._prediction_errors_total: int = 0
        self._alerts_total: dict[str, int] = defaultdict(int)
        self._storage_failures_total: int = 0

        self._start_time_ms = now_ms()

    def observe_feed(self, health: FeedHealth) -> None:
        """Record one feed's health for the current cycle."""
        with self._lock:
            self._feed_status[health.exchange] = health.to_dict()
            self._ticks_total[health.exchange] += health.message_count
            if health.status == "error":
                self._feed_failures_total[health.exchange] += 1

    def inc_cycle(self, failed: bool = False) -> None:
        with self._lock:
            self._cycles_total += 1
            if failed:
                self._cycle_errors_total += 1
            self._last_cycle_ms = now_ms()

    def observe_inference(self, latency_ms: float, path: str = "full") -> None:
        """
        Record a successful prediction.

        Args:
            latency_ms: Wall-clock inference latency
            path: "full" or "stream"
        """
        ts_sec = time.time()
        with self._lock:
            self._latency_window[path].append((ts_sec, latency_ms))
            self._predictions_total[path] += 1

    def inc_prediction_error(self) -> None:
        with self._lock:
            self._prediction_errors_total += 1

    def inc_alert(self, alert_type: str) -> None:
        with self._lock:
            self._alerts_total[alert_type] += 1

    def inc_storage_failure(self) -> None:
        with self._lock:
            self._storage_failures_total += 1

    def latency_stats(self, path: str = "full") -> dict[str, Optional[float]]:
        """Average, p50 and p95 latency for one path over the rolling window."""
        with self._lock:
            return self._latency_stats_locked(path, time.time())

    def _latency_stats_locked(self, path: str, current_time: float) -> dict[str, Optional[float]]:
        """Must be called with lock held."""
        window = self._latency_window.get(path)
        if window is None:
            return {"avg": None, "p50": None, "p95": None, "samples": 0}

        cutoff = current_time - LATENCY_WINDOW_SECONDS
        while window and window[0][0] < cutoff:
            window.popleft()

        latencies = sorted(entry[1] for entry in window)
        if not latencies:
            return {"avg": None, "p50": None, "p95": None, "samples": 0}

        return {
            "avg": round(sum(latencies) / len(latencies), 4),
            "p50": percentile(latencies, 0.50),
            "p95": percentile(latencies, 0.95),
            "samples": len(latencies),
        }

    def snapshot(self) -> dict:
        """
        Generate a snapshot of all metrics.

        Returns:
            Dictionary with all metrics for serialization.
        """
        current_time = time.time()
        current_time_ms = now_ms()

        with self._lock:
            latency = {
                path: self._latency_stats_locked(path, current_time)
                for path in list(self._latency_window)
            }
            return {
                "server_time_ms": current_time_ms,
                "uptime_ms": current_time_ms - self._start_time_ms,
                "feed_status": dict(self._feed_status),
                "feed_failures_total": dict(self._feed_failures_total),
                "ticks_total": dict(self._ticks_total),
                "cycles_total": self._cycles_total,
                "cycle_errors_total": self._cycle_errors_total,
                "last_cycle_ms": self._last_cycle_ms,
                "inference_latency_ms": latency,
                "predictions_total": dict(self._predictions_total),
                "prediction_errors_total": self._prediction_errors_total,
                "alerts_total": dict(self._alerts_total),
                "storage_failures_total": self._storage_failures_total,
            }

    def get_short_summary(self) -> dict:
        """Minimal essential metrics for periodic logging."""
        snap = self.snapshot()

        summary = {
            "cycles": snap["cycles_total"],
            "cycle_errors": snap["cycle_errors_total"],
            "feeds": {name: status["status"] for name, status in snap["feed_status"].items()},
            "predictions": sum(snap["predictions_total"].values()),
            "alerts": sum(snap["alerts_total"].values()),
        }

        full = snap["inference_latency_ms"].get("full")
        if full and full["samples"]:
            summary["inference_avg_ms"] = full["avg"]
            summary["inference_p95_ms"] = full["p95"]

        return summary
