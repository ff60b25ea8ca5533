"""
Status Aggregator
=================

Composes the monitoring payloads.

System status is a pure AND of three checks:
    dataFeeds   every configured feed stored > 10 ticks in the last 5 min
    model       an active deployment exists and is younger than 7 days
    inference   avg latency < 2 ms and p95 < 5 ms over the last hour
                (p95 = sorted[floor(n * 0.95)]; no predictions -> unhealthy)

Also builds the metrics (24 h prediction statistics), alerts (unresolved,
by severity) and pnl (risk metrics + closed trades) payloads.
"""

import logging
from collections import defaultdict
from statistics import fmean
from typing import Any, Callable, Optional, Sequence

from tickflow.metrics import Metrics, percentile
from tickflow.model import ModelRegistry
from tickflow.risk import RiskManager
from tickflow.storage import MarketStore
from tickflow.types import SEVERITIES, PredictionRecord
from tickflow.utils_time import INTERVAL_1D, INTERVAL_5M, now_ms

logger = logging.getLogger(__name__)

ALERTS_LIMIT = 100


def uptime_ratio(predictions: Sequence[PredictionRecord], now: int) -> float:
    """Observed vs expected predictions, expecting at least one per 5 minutes."""
    if not predictions:
        return 0.0
    oldest = min(p.timestamp for p in predictions)
    expected = (now - oldest) / INTERVAL_5M
    if expected <= 0:
        return 1.0
    return min(len(predictions) / expected, 1.0)


class StatusAggregator:
    """
    Args:
        store: Tick counts, prediction log, alerts
        registry: Active model deployment
        risk: Risk manager for the pnl payload
        feeds: Feed identifiers expected to be healthy
        metrics: Optional process metrics included in the metrics payload
        clock: ms clock
    """

    def __init__(
        self,
        store: MarketStore,
        registry: ModelRegistry,
        risk: RiskManager,
        feeds: Sequence[str],
        metrics: Optional[Metrics] = None,
        feed_window_sec: int = 300,
        feed_min_ticks: int = 10,
        model_stale_sec: int = 7 * 24 * 3600,
        latency_window_sec: int = 3600,
        latency_avg_ms: float = 2.0,
        latency_p95_ms: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._registry = registry
        self._risk = risk
        self._feeds = list(feeds)
        self._metrics = metrics
        self.feed_window_ms = feed_window_sec * 1000
        self.feed_min_ticks = feed_min_ticks
        self.model_stale_ms = model_stale_sec * 1000
        self.latency_window_ms = latency_window_sec * 1000
        self.latency_avg_ms = latency_avg_ms
        self.latency_p95_ms = latency_p95_ms
        self._clock = clock

    def check_feeds(self, now: int) -> dict[str, Any]:
        counts = self._store.tick_counts_since(now - self.feed_window_ms)
        feeds = []
        for exchange in self._feeds:
            tick_count = counts.get(exchange, 0)
            healthy = tick_count > self.feed_min_ticks
            feeds.append({
                "exchange": exchange,
                "healthy": healthy,
                "tickCount": tick_count,
                "status": "connected" if healthy else "stale",
            })
        return {
            "healthy": bool(feeds) and all(f["healthy"] for f in feeds),
            "feeds": feeds,
        }

    def check_model(self, now: int) -> dict[str, Any]:
        deployment = self._registry.active_deployment()
        if deployment is None:
            return {"healthy": False, "reason": "No active model found"}

        age = now - deployment.deployed_at
        stale = age > self.model_stale_ms
        return {
            "healthy": not stale,
            "activeModel": deployment.version,
            "deployedAt": deployment.deployed_at,
            "age": age,
            "stale": stale,
        }

    def check_latency(self, now: int) -> dict[str, Any]:
        predictions = self._store.predictions_since(now - self.latency_window_ms)
        if not predictions:
            return {"healthy": False, "reason": "No recent predictions"}

        latencies = sorted(p.latency_ms for p in predictions)
        avg = fmean(latencies)
        p95 = percentile(latencies, 0.95)
        return {
            "healthy": avg < self.latency_avg_ms and p95 < self.latency_p95_ms,
            "avgLatency": avg,
            "maxLatency": latencies[-1],
            "p95Latency": p95,
            "sampleCount": len(latencies),
        }

    def get_system_status(self) -> dict[str, Any]:
        now = self._clock()
        feeds = self.check_feeds(now)
        model = self.check_model(now)
        latency = self.check_latency(now)

        status = {
            "dataFeeds": feeds["healthy"],
            "model": model["healthy"],
            "inference": latency["healthy"],
        }
        status["overall"] = status["dataFeeds"] and status["model"] and status["inference"]

        return {
            "status": status,
            "details": {"dataFeeds": feeds, "model": model, "latency": latency},
            "timestamp": now,
        }

    def get_metrics(self) -> dict[str, Any]:
        now = self._clock()
        predictions = self._store.predictions_since(now - INTERVAL_1D)

        payload: dict[str, Any] = {"timestamp": now}

        if not predictions:
            payload["predictions"] = {"count": 0}
            payload["performance"] = {"predictionRate": 0.0, "systemUptime": 0.0}
        else:
            by_symbol: dict[str, list[PredictionRecord]] = defaultdict(list)
            for p in predictions:
                by_symbol[p.symbol].append(p)

            payload["predictions"] = {
                "count": len(predictions),
                "avgConfidence": fmean(p.confidence for p in predictions),
                "avgLatency": fmean(p.latency_ms for p in predictions),
                "bySymbol": {
                    symbol: {
                        "count": len(items),
                        "avgConfidence": fmean(p.confidence for p in items),
                        "avgLatency": fmean(p.latency_ms for p in items),
                    }
                    for symbol, items in by_symbol.items()
                },
            }
            payload["performance"] = {
                "predictionRate": len(predictions) / 24,
                "systemUptime": uptime_ratio(predictions, now),
            }

        if self._metrics:
            payload["pipeline"] = self._metrics.get_short_summary()
        return payload

    def get_alerts(self) -> dict[str, Any]:
        alerts = sorted(self._store.unresolved_alerts(), key=lambda a: a.timestamp, reverse=True)
        alerts = alerts[:ALERTS_LIMIT]

        categorized: dict[str, list[dict]] = {severity: [] for severity in SEVERITIES}
        for alert in alerts:
            categorized[alert.severity].append(alert.to_dict())

        return {
            "alerts": categorized,
            "totalUnresolved": len(alerts),
            "timestamp": self._clock(),
        }

    def get_pnl(self) -> dict[str, Any]:
        now = self._clock()
        metrics = self._risk.calculate_risk_metrics()
        summary = self._risk.pnl_summary()
        predictions = len(self._store.predictions_since(now - INTERVAL_1D))

        summary["predictionsGenerated"] = predictions
        summary["tradingEfficiency"] = summary["totalTrades"] / max(predictions, 1)

        return {
            "pnl": summary,
            "risk": metrics.to_dict(),
            "limits": self._risk.limits.to_dict(),
            "breaches": [b.to_dict() for b in self._risk.limit_breaches(metrics)],
            "positions": [p.to_dict() for p in self._risk.positions().values()],
            "timestamp": now,
        }
