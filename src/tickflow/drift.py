"""
Drift Monitor
=============

Window-based drift detection over the prediction log plus point-in-time
alerts raised inline by the inference engine.

Window check:
    predictions (newest first) are split at n // 2 into recent and earlier
    halves.
        confidence_decline = mean(earlier.confidence) - mean(recent.confidence)
        latency_increase   = mean(recent.latency)    - mean(earlier.latency)
    confidence_decline > 0.2    -> confidence_drift (high)
    latency_increase   > 0.5 ms -> latency_drift    (medium)
    Fewer samples than required is a defined "insufficient_data" result
    with no alerts.

Point-in-time check (per prediction):
    confidence < 0.3   -> confidence (medium)
    volatility > 0.05  -> volatility (high)

Every alert is appended to the store unresolved. Only resolve_alert, called
from outside, ever resolves one.
"""

import logging
import uuid
from dataclasses import dataclass, field
from statistics import fmean
from typing import Any, Callable, Optional, Sequence

from tickflow.errors import InsufficientDriftSample, StorageWriteFailure
from tickflow.metrics import Metrics
from tickflow.storage import MarketStore
from tickflow.types import AlertSeverity, AlertType, DriftAlert, PredictionRecord
from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "insufficient_data"
DRIFT_DETECTED = "drift_detected"
NO_DRIFT = "no_drift"


@dataclass(slots=True)
class DriftReport:
    detected: bool
    reason: str
    metrics: dict[str, Any] = field(default_factory=dict)
    alerts: list[DriftAlert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "reason": self.reason,
            "metrics": dict(self.metrics),
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


def drift_metrics(predictions: Sequence[PredictionRecord], min_samples: int) -> dict[str, float]:
    """
    Half-split statistics over predictions.

    Raises:
        InsufficientDriftSample: fewer than min_samples predictions
    """
    if len(predictions) < max(min_samples, 2):
        raise InsufficientDriftSample(min_samples, len(predictions))

    newest_first = sorted(predictions, key=lambda p: p.timestamp, reverse=True)
    midpoint = len(newest_first) // 2
    recent = newest_first[:midpoint]
    earlier = newest_first[midpoint:]

    recent_conf = fmean(p.confidence for p in recent)
    earlier_conf = fmean(p.confidence for p in earlier)
    recent_lat = fmean(p.latency_ms for p in recent)
    earlier_lat = fmean(p.latency_ms for p in earlier)

    return {
        "confidenceDecline": earlier_conf - recent_conf,
        "latencyIncrease": recent_lat - earlier_lat,
        "recentConfidence": recent_conf,
        "earlierConfidence": earlier_conf,
        "recentLatency": recent_lat,
        "earlierLatency": earlier_lat,
        "sampleSize": len(predictions),
    }


class DriftMonitor:
    """
    Args:
        store: Prediction log reader and alert log writer
        metrics: Optional Metrics sink for alert counters
        min_samples: Minimum predictions for an on-demand check (default: 50)
        scheduled_min_samples: Minimum for the scheduled check (default: 100)
        lookback_sec: Prediction lookback for the scheduled check
        clock: ms clock, injectable for tests
    """

    def __init__(
        self,
        store: MarketStore,
        metrics: Optional[Metrics] = None,
        min_samples: int = 50,
        scheduled_min_samples: int = 100,
        lookback_sec: int = 3600,
        confidence_decline_threshold: float = 0.2,
        latency_increase_threshold_ms: float = 0.5,
        low_confidence_threshold: float = 0.3,
        high_volatility_threshold: float = 0.05,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self.min_samples = min_samples
        self.scheduled_min_samples = scheduled_min_samples
        self.lookback_ms = lookback_sec * 1000
        self.confidence_decline_threshold = confidence_decline_threshold
        self.latency_increase_threshold_ms = latency_increase_threshold_ms
        self.low_confidence_threshold = low_confidence_threshold
        self.high_volatility_threshold = high_volatility_threshold
        self._clock = clock

    def _raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        value: Optional[float] = None,
        symbol: Optional[str] = None,
    ) -> DriftAlert:
        alert = DriftAlert(
            id=uuid.uuid4().hex,
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=self._clock(),
            value=value,
            symbol=symbol,
        )

        logger.warning(
            "drift_alert_raised",
            extra={"alert_type": alert_type, "severity": severity, "value": value, "symbol": symbol},
        )
        if self._metrics:
            self._metrics.inc_alert(alert_type)

        try:
            self._store.append_alert(alert)
        except StorageWriteFailure as e:
            logger.error("storage_write_failed", extra={"table": e.table, "error": e.reason})
            if self._metrics:
                self._metrics.inc_storage_failure()

        return alert

    def check_drift(
        self,
        predictions: Sequence[PredictionRecord],
        min_samples: Optional[int] = None,
    ) -> DriftReport:
        """Window drift check over the given predictions."""
        required = self.min_samples if min_samples is None else min_samples

        try:
            stats = drift_metrics(predictions, required)
        except InsufficientDriftSample as e:
            return DriftReport(
                detected=False,
                reason=INSUFFICIENT_DATA,
                metrics={"sampleSize": e.available, "required": e.required},
            )

        alerts: list[DriftAlert] = []

        if stats["confidenceDecline"] > self.confidence_decline_threshold:
            alerts.append(self._raise_alert(
                "confidence_drift",
                "high",
                f"Confidence declined by {stats['confidenceDecline'] * 100:.1f}%",
                value=stats["confidenceDecline"],
            ))

        if stats["latencyIncrease"] > self.latency_increase_threshold_ms:
            alerts.append(self._raise_alert(
                "latency_drift",
                "medium",
                f"Latency increased by {stats['latencyIncrease']:.1f}ms",
                value=stats["latencyIncrease"],
            ))

        logger.info(
            "drift_check_complete",
            extra={
                "samples": stats["sampleSize"],
                "confidence_decline": round(stats["confidenceDecline"], 4),
                "latency_increase": round(stats["latencyIncrease"], 4),
                "alerts": len(alerts),
            },
        )

        return DriftReport(
            detected=bool(alerts),
            reason=DRIFT_DETECTED if alerts else NO_DRIFT,
            metrics=stats,
            alerts=alerts,
        )

    def run_scheduled_check(self, now: Optional[int] = None) -> DriftReport:
        """Check the last lookback window of the prediction log."""
        now = self._clock() if now is None else now
        predictions = self._store.predictions_since(now - self.lookback_ms)
        return self.check_drift(predictions, min_samples=self.scheduled_min_samples)

    def check_point(
        self,
        record: PredictionRecord,
        volatility: Optional[float] = None,
    ) -> list[DriftAlert]:
        """Point-in-time alerts for one prediction."""
        alerts: list[DriftAlert] = []

        if record.confidence < self.low_confidence_threshold:
            alerts.append(self._raise_alert(
                "confidence",
                "medium",
                f"Low confidence prediction for {record.symbol}: {record.confidence:.3f}",
                value=record.confidence,
                symbol=record.symbol,
            ))

        if volatility is not None and volatility > self.high_volatility_threshold:
            alerts.append(self._raise_alert(
                "volatility",
                "high",
                f"High volatility for {record.symbol}: {volatility:.4f}",
                value=volatility,
                symbol=record.symbol,
            ))

        return alerts

    def resolve_alert(self, alert_id: str) -> bool:
        try:
            resolved = self._store.resolve_alert(alert_id)
        except StorageWriteFailure as e:
            # committed in the store, only the mirror write failed
            logger.error("storage_write_failed", extra={"table": e.table, "error": e.reason})
            resolved = True
        logger.info("drift_alert_resolve", extra={"alert_id": alert_id, "resolved": resolved})
        return resolved
