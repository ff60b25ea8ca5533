"""
Inference Engine
================

Scores feature vectors through the active model.

    value      = tanh(model.score(normalize_features(features)))   in [-1, 1]
    confidence = min(|value| + 0.1, cap)   cap: 0.95 full / 0.9 stream

Latency budget (full path): avg < 2 ms, p95 < 5 ms. Exceeding it is logged
as a warning; the prediction is still returned.

Every successful prediction is appended to the prediction log with its
feature snapshot and model version. A failed log write is logged and
swallowed. Point-in-time drift checks run after each prediction.

Modes:
    predict         one feature vector
    batch_predict   many symbols against one resolved model, per-item errors
    stream_predict  ticks appended to the trailing buffer, fast feature path
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from tickflow.drift import DriftMonitor
from tickflow.errors import StorageWriteFailure, TickflowError
from tickflow.features import FeatureExtractor
from tickflow.metrics import Metrics, percentile
from tickflow.model import ModelRegistry, ScoringModel, normalize_features
from tickflow.storage import MarketStore
from tickflow.tick_buffer import TickBuffer
from tickflow.types import FeatureVector, PredictionPath, PredictionRecord, Tick
from tickflow.utils_time import now_ms, perf_ms

logger = logging.getLogger(__name__)

CONFIDENCE_FLOOR = 0.1

# Rolling budget evaluation
BUDGET_WINDOW = 1000
BUDGET_CHECK_EVERY = 100


def bounded_confidence(value: float, cap: float) -> float:
    return min(abs(value) + CONFIDENCE_FLOOR, cap)


@dataclass(slots=True, frozen=True)
class Prediction:
    symbol: str
    value: float
    confidence: float
    latency_ms: float
    model_version: str
    timestamp: int
    path: PredictionPath = "full"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "prediction": self.value,
            "confidence": self.confidence,
            "latency": self.latency_ms,
            "modelVersion": self.model_version,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class BatchResult:
    items: list[dict[str, Any]] = field(default_factory=list)
    total_latency_ms: float = 0.0
    processed: int = 0
    successful: int = 0
    errors: int = 0

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.successful if self.successful else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "predictions": self.items,
            "totalLatency": self.total_latency_ms,
            "avgLatency": self.avg_latency_ms,
            "metadata": {
                "processed": self.processed,
                "successful": self.successful,
                "errors": self.errors,
            },
        }


@dataclass(slots=True)
class StreamResult:
    symbol: str
    predictions: list[Prediction] = field(default_factory=list)
    buffer_size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "predictions": [
                {
                    "prediction": p.value,
                    "confidence": p.confidence,
                    "latency": p.latency_ms,
                    "timestamp": p.timestamp,
                }
                for p in self.predictions
            ],
            "bufferSize": self.buffer_size,
        }


class InferenceEngine:
    """
    Args:
        registry: Resolves the active model (raises NoActiveModel)
        store: Prediction log
        extractor: Feature paths used by stream mode
        buffer: Trailing tick buffer updated by stream mode
        drift: Optional point-in-time alert checks
        metrics: Optional Metrics sink
        clock: ms clock for prediction timestamps
    """

    def __init__(
        self,
        registry: ModelRegistry,
        store: MarketStore,
        extractor: FeatureExtractor,
        buffer: TickBuffer,
        drift: Optional[DriftMonitor] = None,
        metrics: Optional[Metrics] = None,
        confidence_cap: float = 0.95,
        stream_confidence_cap: float = 0.9,
        latency_budget_avg_ms: float = 2.0,
        latency_budget_p95_ms: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self._store = store
        self._extractor = extractor
        self._buffer = buffer
        self._drift = drift
        self._metrics = metrics
        self.confidence_cap = confidence_cap
        self.stream_confidence_cap = stream_confidence_cap
        self.latency_budget_avg_ms = latency_budget_avg_ms
        self.latency_budget_p95_ms = latency_budget_p95_ms
        self._clock = clock

        self._latencies: deque[float] = deque(maxlen=BUDGET_WINDOW)
        self._count = 0
        self._count_lock = threading.Lock()

    def _check_budget(self, latency_ms: float, symbol: str) -> None:
        if latency_ms > self.latency_budget_p95_ms:
            logger.warning(
                "inference_latency_budget_exceeded",
                extra={"symbol": symbol, "latency_ms": round(latency_ms, 4), "budget_ms": self.latency_budget_p95_ms},
            )

        self._latencies.append(latency_ms)
        with self._count_lock:
            self._count += 1
            due = self._count % BUDGET_CHECK_EVERY == 0
        if not due:
            return

        window = sorted(self._latencies)
        avg = sum(window) / len(window)
        p95 = percentile(window, 0.95)
        if avg > self.latency_budget_avg_ms or p95 > self.latency_budget_p95_ms:
            logger.warning(
                "inference_latency_budget_exceeded",
                extra={
                    "avg_ms": round(avg, 4),
                    "p95_ms": round(p95, 4),
                    "budget_avg_ms": self.latency_budget_avg_ms,
                    "budget_p95_ms": self.latency_budget_p95_ms,
                    "samples": len(window),
                },
            )

    def _run(
        self,
        model: ScoringModel,
        features: FeatureVector,
        cap: float,
        path: PredictionPath,
    ) -> Prediction:
        start = perf_ms()
        value = math.tanh(model.score(normalize_features(features.features)))
        if not math.isfinite(value):
            raise ValueError(f"model {model.version} produced a non-finite score")
        confidence = bounded_confidence(value, cap)
        latency_ms = perf_ms() - start

        prediction = Prediction(
            symbol=features.symbol,
            value=value,
            confidence=confidence,
            latency_ms=latency_ms,
            model_version=model.version,
            timestamp=self._clock(),
            path=path,
        )

        if path == "full":
            self._check_budget(latency_ms, features.symbol)
        if self._metrics:
            self._metrics.observe_inference(latency_ms, path=path)

        record = PredictionRecord(
            symbol=prediction.symbol,
            prediction=value,
            confidence=confidence,
            latency_ms=latency_ms,
            timestamp=prediction.timestamp,
            model_version=model.version,
            features=dict(features.features),
            path=path,
        )
        try:
            self._store.append_prediction(record)
        except StorageWriteFailure as e:
            logger.error("storage_write_failed", extra={"table": e.table, "error": e.reason})
            if self._metrics:
                self._metrics.inc_storage_failure()

        if self._drift:
            self._drift.check_point(record, features.features.get("volatility"))

        return prediction

    def predict(self, features: FeatureVector) -> Prediction:
        """
        Score one feature vector on the full path.

        Raises:
            NoActiveModel: no deployed model
        """
        model = self._registry.active()
        return self._run(model, features, self.confidence_cap, "full")

    def batch_predict(
        self,
        symbols: Sequence[str],
        feature_source: Callable[[str], FeatureVector],
    ) -> BatchResult:
        """
        Predict symbols sequentially against one resolved model.

        Per-symbol failures (InsufficientData, bad features) become
        ``{"symbol", "error"}`` items and never fail the batch.

        Raises:
            NoActiveModel: no deployed model
        """
        model = self._registry.active()
        result = BatchResult()

        for symbol in symbols:
            result.processed += 1
            try:
                prediction = self._run(model, feature_source(symbol), self.confidence_cap, "full")
            except (TickflowError, ValueError) as e:
                result.errors += 1
                result.items.append({"symbol": symbol, "error": str(e)})
                if self._metrics:
                    self._metrics.inc_prediction_error()
                continue

            result.successful += 1
            result.total_latency_ms += prediction.latency_ms
            result.items.append(prediction.to_dict())

        logger.info(
            "inference_batch_complete",
            extra={
                "processed": result.processed,
                "successful": result.successful,
                "errors": result.errors,
                "avg_latency_ms": round(result.avg_latency_ms, 4),
            },
        )
        return result

    def stream_predict(self, symbol: str, ticks: Sequence[Tick]) -> StreamResult:
        """
        Append ticks to the trailing buffer and predict after each one.

        Raises:
            NoActiveModel: no deployed model
        """
        model = self._registry.active()
        result = StreamResult(symbol=symbol)

        for tick in ticks:
            if tick.symbol != symbol:
                raise ValueError(f"tick for {tick.symbol} in stream for {symbol}")
            result.buffer_size = self._buffer.append(tick)
            window = self._buffer.window(symbol, self._extractor.stream_ticks)
            features = self._extractor.extract_stream_features(window)
            result.predictions.append(
                self._run(model, features, self.stream_confidence_cap, "stream")
            )

        if not ticks:
            result.buffer_size = self._buffer.size(symbol)
        return result
