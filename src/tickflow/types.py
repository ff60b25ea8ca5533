"""
Type Definitions Module
=======================

Canonical data structures shared by every pipeline stage.

Immutable records (Tick, OrderBookSnapshot, FeatureVector, PredictionRecord,
DriftAlert, RiskLimits) are frozen slotted dataclasses. Position is the only
mutable record and is owned by the RiskManager.

External JSON uses camelCase keys (see ``to_dict``); Python attributes are
snake_case.

Schema version: 1.0
"""

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional


SCHEMA_VERSION = "1.0"

FeedStatus = Literal["connected", "stale", "error"]
AlertType = Literal["confidence_drift", "latency_drift", "confidence", "volatility"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
PredictionPath = Literal["full", "stream"]

SEVERITIES: tuple[str, ...] = ("critical", "high", "medium", "low")

# (price, size)
BookLevel = tuple[float, float]


@dataclass(slots=True, frozen=True)
class Tick:
    """
    Single timestamped trade/quote observation for one symbol on one exchange.

    Attributes:
        symbol: Canonical symbol (e.g. "BTC/USD", "AAPL")
        price: Last price, always > 0
        volume: Traded volume, always >= 0
        timestamp: Event time, ms epoch
        exchange: Feed identifier the tick came from
        bid, ask: Optional best quotes
        spread: ask - bid when both quotes are present
    """
    symbol: str
    price: float
    volume: float
    timestamp: int
    exchange: str
    bid: Optional[float] = None
    ask: Optional[float] = None
    spread: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "volume": self.volume,
            "timestamp": self.timestamp,
            "exchange": self.exchange,
            "bid": self.bid,
            "ask": self.ask,
            "spread": self.spread,
        }


@dataclass(slots=True, frozen=True)
class OrderBookSnapshot:
    """
    Order book levels for (symbol, exchange) at one instant.

    bids are sorted by price descending, asks ascending; sizes are never
    negative. The normalizer enforces both.
    """
    symbol: str
    bids: tuple[BookLevel, ...]
    asks: tuple[BookLevel, ...]
    timestamp: int
    exchange: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.symbol, self.exchange)

    def best_bid(self) -> Optional[BookLevel]:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> Optional[BookLevel]:
        return self.asks[0] if self.asks else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "bids": [list(level) for level in self.bids],
            "asks": [list(level) for level in self.asks],
            "timestamp": self.timestamp,
            "exchange": self.exchange,
        }


@dataclass(slots=True, frozen=True)
class FeedHealth:
    """Per-feed health, recomputed every ingestion cycle."""
    exchange: str
    status: FeedStatus
    latency_ms: float = 0.0
    message_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status,
            "latency": round(self.latency_ms, 3),
            "messageCount": self.message_count,
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass(slots=True, frozen=True)
class FeatureVector:
    """
    Named numeric features for one symbol at one instant.

    Raises:
        ValueError: if any feature is NaN or infinite.
    """
    symbol: str
    timestamp: int
    features: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        bad = [name for name, value in self.features.items() if not math.isfinite(value)]
        if bad:
            raise ValueError(f"non-finite features: {', '.join(sorted(bad))}")

    def __getitem__(self, name: str) -> float:
        return self.features[name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp,
            "features": dict(self.features),
        }


@dataclass(slots=True, frozen=True)
class PredictionRecord:
    """
    One entry of the append-only prediction log. Never mutated.

    Invariant: confidence == min(abs(prediction) + 0.1, cap) for the path's cap.
    """
    symbol: str
    prediction: float
    confidence: float
    latency_ms: float
    timestamp: int
    model_version: str
    features: dict[str, float] = field(default_factory=dict)
    path: PredictionPath = "full"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "prediction": self.prediction,
            "confidence": self.confidence,
            "latency": self.latency_ms,
            "timestamp": self.timestamp,
            "modelVersion": self.model_version,
            "features": dict(self.features),
            "path": self.path,
        }


@dataclass(slots=True, frozen=True)
class DriftAlert:
    """
    A detected breach. Created once per breach event; ``resolved`` only
    changes through an external resolve call on the store.
    """
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: int
    resolved: bool = False
    value: Optional[float] = None
    symbol: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "timestamp": self.timestamp,
            "resolved": self.resolved,
            "value": self.value,
            "symbol": self.symbol,
        }


@dataclass(slots=True, frozen=True)
class RiskLimits:
    """
    Portfolio limits, configured once at startup.

    Raises:
        ValueError: if any limit is not positive or max_drawdown is not in (0, 1).
    """
    max_position_size: float
    daily_loss_limit: float
    max_drawdown: float
    concentration_limit: float
    leverage_limit: float
    stop_loss_percent: float
    take_profit_percent: float
    max_correlated_positions: int

    def __post_init__(self) -> None:
        for name in self.__slots__:
            if getattr(self, name) <= 0:
                raise ValueError(f"risk limit {name} must be positive")
        if not 0 < self.max_drawdown < 1:
            raise ValueError("risk limit max_drawdown must be in (0, 1)")

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxPositionSize": self.max_position_size,
            "dailyLossLimit": self.daily_loss_limit,
            "maxDrawdown": self.max_drawdown,
            "concentrationLimit": self.concentration_limit,
            "leverageLimit": self.leverage_limit,
            "stopLossPercent": self.stop_loss_percent,
            "takeProfitPercent": self.take_profit_percent,
            "maxCorrelatedPositions": self.max_correlated_positions,
        }


@dataclass(slots=True)
class Position:
    """Open position. Mutated in place by the RiskManager only."""
    symbol: str
    quantity: float
    entry_price: float
    current_price: float
    timestamp: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @property
    def market_value(self) -> float:
        return abs(self.quantity * self.current_price)

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.entry_price) * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "entryPrice": self.entry_price,
            "currentPrice": self.current_price,
            "unrealizedPnL": self.unrealized_pnl,
            "timestamp": self.timestamp,
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
        }


@dataclass(slots=True, frozen=True)
class ClosedTrade:
    """Realized outcome of a closed position."""
    symbol: str
    quantity: float
    entry_price: float
    exit_price: float
    pnl: float
    timestamp: int
    reason: str = "manual"

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "quantity": self.quantity,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "pnl": self.pnl,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass(slots=True, frozen=True)
class RiskMetrics:
    """Point-in-time portfolio risk snapshot. Recomputed on demand."""
    portfolio_value: float
    daily_pnl: float
    max_drawdown: float
    current_drawdown: float
    sharpe_ratio: float
    var_estimate: float
    correlation_risk: float
    leverage: float
    equity: float = 0.0
    exposure_by_asset: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolioValue": self.portfolio_value,
            "equity": self.equity,
            "dailyPnL": self.daily_pnl,
            "maxDrawdown": self.max_drawdown,
            "currentDrawdown": self.current_drawdown,
            "sharpeRatio": self.sharpe_ratio,
            "varEstimate": self.var_estimate,
            "correlationRisk": self.correlation_risk,
            "leverage": self.leverage,
            "exposureByAsset": dict(self.exposure_by_asset),
        }


@dataclass(slots=True, frozen=True)
class ModelDeployment:
    """Single-row active model metadata."""
    version: str
    deployed_at: int
    status: Literal["active", "retired"] = "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "deployed_at": self.deployed_at,
            "status": self.status,
        }
