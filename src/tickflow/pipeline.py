"""
Pipeline Context
================

Explicitly constructed container for one pipeline instance and the three
request handlers built on it.

    ingest(symbols, exchanges)  -> aggregator cycle, buffer + store update
    infer(action, data)         -> predict | batch_predict | stream_predict
    monitor(action)             -> status | metrics | alerts | drift | pnl

Handlers return JSON-ready dicts with ``success: True``. Malformed input
raises ValueError, inference without a model raises NoActiveModel; the HTTP
layer turns both into ``success: False`` responses.

Usage:
    pipeline = build_pipeline(settings)
    response = await pipeline.ingest(["BTC/USD"], ["binance"])
    prediction = pipeline.infer("predict", {"symbol": "BTC/USD"})
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from tickflow.aggregator import FeedAggregator
from tickflow.config import Settings
from tickflow.drift import DriftMonitor
from tickflow.errors import StorageWriteFailure
from tickflow.features import FeatureExtractor
from tickflow.feeds import BinanceFeed, Feed, ReplayFeed
from tickflow.inference import InferenceEngine
from tickflow.metrics import Metrics
from tickflow.model import LinearSignalModel, ModelRegistry, ScoringModel
from tickflow.normalizers import normalize_tick
from tickflow.rest_client import RestClient
from tickflow.risk import RiskManager
from tickflow.status import StatusAggregator
from tickflow.storage import InMemoryStore, MarketStore
from tickflow.storage_writer import StorageWriter
from tickflow.tick_buffer import TickBuffer
from tickflow.types import FeatureVector, OrderBookSnapshot, Tick
from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

INFER_ACTIONS = ("predict", "batch_predict", "stream_predict")
MONITOR_ACTIONS = ("status", "metrics", "alerts", "drift", "pnl")


def _require_symbol(data: Mapping[str, Any]) -> str:
    symbol = data.get("symbol")
    if not isinstance(symbol, str) or not symbol:
        raise ValueError("data.symbol must be a non-empty string")
    return symbol


def _require_str_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, (list, tuple)) or not value:
        raise ValueError(f"{name} must be a non-empty list of strings")
    if not all(isinstance(item, str) and item for item in value):
        raise ValueError(f"{name} must be a non-empty list of strings")
    return list(value)


@dataclass
class PipelineContext:
    settings: Settings
    store: MarketStore
    metrics: Metrics
    aggregator: FeedAggregator
    buffer: TickBuffer
    extractor: FeatureExtractor
    registry: ModelRegistry
    engine: InferenceEngine
    drift: DriftMonitor
    risk: RiskManager
    status: StatusAggregator
    clock: Callable[[], int] = now_ms
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    _books: dict[str, OrderBookSnapshot] = field(default_factory=dict, init=False, repr=False)
    _books_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    # =========================================================================
    # Ingestion
    # =========================================================================

    def latest_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        with self._books_lock:
            return self._books.get(symbol)

    def _update_books(self, books: Sequence[OrderBookSnapshot]) -> None:
        with self._books_lock:
            for book in books:
                current = self._books.get(book.symbol)
                if current is None or book.timestamp >= current.timestamp:
                    self._books[book.symbol] = book

    def _mark_positions(self, ticks: Sequence[Tick]) -> None:
        latest: dict[str, float] = {}
        for tick in ticks:
            latest[tick.symbol] = tick.price
        open_symbols = self.risk.positions().keys()
        for symbol in open_symbols & latest.keys():
            self.risk.update_price(symbol, latest[symbol])

    async def ingest(
        self,
        symbols: Sequence[str],
        exchanges: Optional[Sequence[str]] = None,
    ) -> dict[str, Any]:
        """One ingestion cycle. Storage failures are logged, never raised."""
        symbols = _require_str_list(symbols, "symbols")
        if exchanges is not None:
            exchanges = _require_str_list(exchanges, "exchanges")

        result = await self.aggregator.aggregate(symbols, exchanges)

        buffered = self.buffer.extend(result.ticks)
        if buffered < len(result.ticks):
            logger.debug(
                "ingest_repeated_ticks_skipped",
                extra={"skipped": len(result.ticks) - buffered, "buffered": buffered},
            )
        self._update_books(result.order_books)
        self._mark_positions(result.ticks)

        try:
            self.store.upsert_ticks(result.ticks)
            self.store.upsert_order_books(result.order_books)
        except StorageWriteFailure as e:
            logger.error("storage_write_failed", extra={"table": e.table, "error": e.reason})
            self.metrics.inc_storage_failure()

        self.metrics.inc_cycle()
        return {"success": True, **result.to_response()}

    # =========================================================================
    # Inference
    # =========================================================================

    def features_for(self, symbol: str) -> FeatureVector:
        """Full feature vector from the trailing buffer and latest book."""
        window = self.buffer.window(symbol, self.settings.FEATURE_WINDOW_TICKS)
        return self.extractor.extract(window, self.latest_book(symbol))

    def _stream_ticks(self, symbol: str, data: Mapping[str, Any]) -> tuple[list[Tick], int]:
        raw_ticks = data.get("ticks")
        if not isinstance(raw_ticks, list):
            raise ValueError("data.ticks must be a list")

        exchange = data.get("exchange") or "stream"
        ticks: list[Tick] = []
        rejected = 0
        for raw in raw_ticks:
            if not isinstance(raw, dict):
                rejected += 1
                continue
            tick = normalize_tick({**raw, "symbol": symbol}, exchange, default_ts_ms=self.clock())
            if tick is None:
                rejected += 1
                continue
            ticks.append(tick)
        return ticks, rejected

    def infer(self, action: str, data: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        """
        Inference trigger.

        data by action:
            predict         {"symbol", "features"?}
            batch_predict   {"symbols": [...]}
            stream_predict  {"symbol", "ticks": [{price, volume, timestamp?, bid?, ask?}], "exchange"?}
        """
        data = data or {}
        if not isinstance(data, Mapping):
            raise ValueError("data must be an object")

        if action == "predict":
            symbol = _require_symbol(data)
            raw_features = data.get("features")
            if raw_features is not None:
                if not isinstance(raw_features, Mapping):
                    raise ValueError("data.features must be an object")
                features = FeatureVector(
                    symbol=symbol,
                    timestamp=self.clock(),
                    features={name: float(value) for name, value in raw_features.items()},
                )
            else:
                features = self.features_for(symbol)
            prediction = self.engine.predict(features)
            return {"success": True, **prediction.to_dict()}

        if action == "batch_predict":
            symbols = _require_str_list(data.get("symbols"), "data.symbols")
            batch = self.engine.batch_predict(symbols, self.features_for)
            return {"success": True, **batch.to_dict()}

        if action == "stream_predict":
            symbol = _require_symbol(data)
            ticks, rejected = self._stream_ticks(symbol, data)
            stream = self.engine.stream_predict(symbol, ticks)
            return {"success": True, **stream.to_dict(), "rejected": rejected}

        raise ValueError(f"Unknown action: {action}")

    # =========================================================================
    # Monitoring
    # =========================================================================

    def monitor(self, action: str) -> dict[str, Any]:
        if action == "status":
            return {"success": True, **self.status.get_system_status()}
        if action == "metrics":
            return {"success": True, "metrics": self.status.get_metrics(), "timestamp": self.clock()}
        if action == "alerts":
            return {"success": True, **self.status.get_alerts()}
        if action == "drift":
            now = self.clock()
            predictions = self.store.predictions_since(now - self.drift.lookback_ms)
            report = self.drift.check_drift(predictions)
            return {"success": True, "drift": report.to_dict(), "timestamp": now}
        if action == "pnl":
            return {"success": True, **self.status.get_pnl()}

        raise ValueError(f"Unknown action: {action}")

    def resolve_alert(self, alert_id: str) -> dict[str, Any]:
        return {"success": True, "alertId": alert_id, "resolved": self.drift.resolve_alert(alert_id)}

    async def close(self) -> None:
        for closer in self.closers:
            try:
                await closer()
            except Exception as e:
                logger.warning("pipeline_close_error", extra={"error": str(e), "error_type": type(e).__name__})
        self.store.close()


def build_feeds(settings: Settings) -> tuple[dict[str, Feed], list[Callable[[], Awaitable[None]]]]:
    """Real feed implementations for the configured feed identifiers."""
    feeds: dict[str, Feed] = {}
    closers: list[Callable[[], Awaitable[None]]] = []

    for name in settings.FEEDS:
        if name == "binance":
            client = RestClient(
                base_url=settings.BINANCE_REST_BASE,
                name="binance",
                timeout_sec=settings.FEED_TIMEOUT_SEC,
            )
            feeds[name] = BinanceFeed(client, depth_limit=settings.BOOK_DEPTH_LIMIT)
            closers.append(client.close)
        elif name == "replay":
            if not settings.REPLAY_FILE:
                logger.warning("feed_replay_without_file")
                continue
            feeds[name] = ReplayFeed.from_jsonl(settings.REPLAY_FILE, name="replay")
        else:
            logger.warning("feed_unknown", extra={"feed": name})

    return feeds, closers


def build_store(settings: Settings) -> MarketStore:
    if not settings.RECORD_ENABLED:
        return InMemoryStore()
    return InMemoryStore(
        prediction_writer=StorageWriter(
            output_dir=settings.RECORD_DIR, prefix="predictions", batch_size=settings.RECORD_BATCH_SIZE
        ),
        alert_writer=StorageWriter(
            output_dir=settings.RECORD_DIR, prefix="alerts", batch_size=settings.RECORD_BATCH_SIZE
        ),
    )


def build_pipeline(
    settings: Settings,
    feeds: Optional[Mapping[str, Feed]] = None,
    models: Optional[Sequence[ScoringModel]] = None,
    store: Optional[MarketStore] = None,
    clock: Callable[[], int] = now_ms,
) -> PipelineContext:
    """
    Wire a pipeline from settings.

    Args:
        settings: Settings instance
        feeds: Feed implementations by identifier (default: from settings.FEEDS)
        models: Models to register (default: the built-in linear model)
        store: Persistent store (default: InMemoryStore per settings)
        clock: ms clock shared by every component
    """
    closers: list[Callable[[], Awaitable[None]]] = []
    if feeds is None:
        feeds, closers = build_feeds(settings)

    metrics = Metrics()
    store = store if store is not None else build_store(settings)

    aggregator = FeedAggregator(
        feeds,
        timeout_sec=settings.FEED_TIMEOUT_SEC,
        bucket_ms=settings.DEDUP_BUCKET_MS,
        stale_min_messages=settings.FEED_STALE_MIN_MESSAGES,
        metrics=metrics,
    )
    buffer = TickBuffer(maxlen=settings.TICK_BUFFER_SIZE, bucket_ms=settings.DEDUP_BUCKET_MS)
    extractor = FeatureExtractor(
        min_ticks=settings.MIN_WINDOW_TICKS,
        stream_ticks=settings.STREAM_WINDOW_TICKS,
        topn=settings.TOPN,
    )

    registry = ModelRegistry(store)
    for model in models if models is not None else [LinearSignalModel.default(settings.MODEL_VERSION)]:
        registry.register(model)
    if settings.MODEL_AUTO_DEPLOY and registry.active_deployment() is None:
        registry.deploy(settings.MODEL_VERSION, deployed_at=clock())

    drift = DriftMonitor(
        store,
        metrics=metrics,
        min_samples=settings.DRIFT_MIN_SAMPLES,
        scheduled_min_samples=settings.DRIFT_SCHEDULED_MIN_SAMPLES,
        lookback_sec=settings.DRIFT_LOOKBACK_SEC,
        confidence_decline_threshold=settings.CONFIDENCE_DECLINE_THRESHOLD,
        latency_increase_threshold_ms=settings.LATENCY_INCREASE_THRESHOLD_MS,
        low_confidence_threshold=settings.LOW_CONFIDENCE_THRESHOLD,
        high_volatility_threshold=settings.HIGH_VOLATILITY_THRESHOLD,
        clock=clock,
    )
    engine = InferenceEngine(
        registry,
        store,
        extractor,
        buffer,
        drift=drift,
        metrics=metrics,
        confidence_cap=settings.CONFIDENCE_CAP,
        stream_confidence_cap=settings.STREAM_CONFIDENCE_CAP,
        latency_budget_avg_ms=settings.LATENCY_BUDGET_AVG_MS,
        latency_budget_p95_ms=settings.LATENCY_BUDGET_P95_MS,
        clock=clock,
    )
    risk = RiskManager(settings.risk_limits(), initial_capital=settings.INITIAL_CAPITAL, clock=clock)
    status = StatusAggregator(
        store,
        registry,
        risk,
        feeds=list(feeds),
        metrics=metrics,
        feed_window_sec=settings.FEED_HEALTH_WINDOW_SEC,
        feed_min_ticks=settings.FEED_HEALTH_MIN_TICKS,
        model_stale_sec=settings.MODEL_STALE_SEC,
        latency_window_sec=settings.LATENCY_WINDOW_SEC,
        latency_avg_ms=settings.LATENCY_BUDGET_AVG_MS,
        latency_p95_ms=settings.LATENCY_BUDGET_P95_MS,
        clock=clock,
    )

    logger.info(
        "pipeline_built",
        extra={
            "feeds": list(feeds),
            "model_version": settings.MODEL_VERSION,
            "model_deployed": registry.active_deployment() is not None,
        },
    )

    return PipelineContext(
        settings=settings,
        store=store,
        metrics=metrics,
        aggregator=aggregator,
        buffer=buffer,
        extractor=extractor,
        registry=registry,
        engine=engine,
        drift=drift,
        risk=risk,
        status=status,
        clock=clock,
        closers=closers,
    )
