"""
Risk Manager
============

Portfolio metrics and limit evaluation. Never executes trades: callers use
``check_order`` / ``limit_breaches`` as their gate before acting.

State:
    positions           open positions by symbol
    realized_pnl        realized PnL since the last daily reset
    equity history      initial capital + total realized + unrealized,
                        recorded on every position change (last 1000)

Metrics (``calculate_risk_metrics``):
    portfolio_value     sum |qty * px| over open positions
    daily_pnl           realized today + unrealized
    current_drawdown    (peak equity - equity) / peak equity
    max_drawdown        largest peak-to-trough fall over the equity history
    sharpe_ratio        mean / stdev of equity returns * sqrt(252)
    var_estimate        historical 95% VaR of equity returns (fraction)
    correlation_risk    sum (exposure / portfolio_value)^2
    leverage            portfolio_value / equity

Sharpe and VaR need at least 30 history points; below that they are 0.
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, replace
from statistics import fmean, pstdev
from typing import Any, Callable, Optional

from tickflow.types import ClosedTrade, Position, RiskLimits, RiskMetrics
from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

HISTORY_MAXLEN = 1000
TRADES_MAXLEN = 1000
MIN_HISTORY_FOR_STATS = 30
TRADING_DAYS = 252
VAR_CONFIDENCE = 0.95
KELLY_SAFETY_FACTOR = 0.25
VOL_BASE_ALLOCATION = 0.02
VOL_EPSILON = 0.001


@dataclass(slots=True, frozen=True)
class RiskCheck:
    allowed: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason}


@dataclass(slots=True, frozen=True)
class LimitBreach:
    limit: str
    value: float
    threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {"limit": self.limit, "value": self.value, "threshold": self.threshold}


def equity_returns(history: list[float]) -> list[float]:
    return [
        (cur - prev) / prev
        for prev, cur in zip(history, history[1:])
        if prev > 0
    ]


def max_drawdown(history: list[float]) -> float:
    if len(history) < 2:
        return 0.0
    worst = 0.0
    peak = history[0]
    for value in history:
        if value > peak:
            peak = value
        elif peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


class RiskManager:
    """
    Args:
        limits: Session risk limits (immutable)
        initial_capital: Starting equity
        clock: ms clock for position / trade timestamps
    """

    def __init__(
        self,
        limits: RiskLimits,
        initial_capital: float = 1_000_000.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if initial_capital <= 0:
            raise ValueError("initial_capital must be positive")
        self.limits = limits
        self.initial_capital = initial_capital
        self._clock = clock

        self._lock = threading.RLock()
        self._positions: dict[str, Position] = {}
        self._realized_total = 0.0
        self._realized_today = 0.0
        self._trades: deque[ClosedTrade] = deque(maxlen=TRADES_MAXLEN)
        # Aggregates over every closed trade, including those evicted from _trades
        self._trade_count = 0
        self._trade_wins = 0
        self._trade_pnl_total = 0.0
        self._best_trade: Optional[float] = None
        self._worst_trade: Optional[float] = None
        self._history: deque[float] = deque([initial_capital], maxlen=HISTORY_MAXLEN)
        self._peak_equity = initial_capital

    # =========================================================================
    # Position state
    # =========================================================================

    def _equity_locked(self) -> float:
        unrealized = sum(p.unrealized_pnl for p in self._positions.values())
        return self.initial_capital + self._realized_total + unrealized

    def _record_equity_locked(self) -> None:
        equity = self._equity_locked()
        self._history.append(equity)
        self._peak_equity = max(self._peak_equity, equity)

    def add_position(
        self,
        symbol: str,
        quantity: float,
        entry_price: float,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> Position:
        """Open (or replace) the position for a symbol."""
        if entry_price <= 0:
            raise ValueError("entry_price must be positive")
        if quantity == 0:
            raise ValueError("quantity must be non-zero")

        position = Position(
            symbol=symbol,
            quantity=quantity,
            entry_price=entry_price,
            current_price=entry_price,
            timestamp=self._clock(),
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        with self._lock:
            replaced = symbol in self._positions
            self._positions[symbol] = position
            self._record_equity_locked()

        logger.info(
            "risk_position_added",
            extra={"symbol": symbol, "quantity": quantity, "entry_price": entry_price, "replaced": replaced},
        )
        return replace(position)

    def update_price(self, symbol: str, price: float) -> Optional[ClosedTrade]:
        """
        Mark a position to market and apply its exits.

        Exits, in order: stop-loss price, take-profit price, then the
        percentage stops from the limits. Returns the ClosedTrade when an
        exit fired.
        """
        if price <= 0:
            raise ValueError("price must be positive")

        with self._lock:
            position = self._positions.get(symbol)
            if position is None:
                return None
            position.current_price = price

            reason = self._exit_reason(position)
            if reason:
                return self._close_locked(symbol, price, reason)

            self._record_equity_locked()
            return None

    def _exit_reason(self, position: Position) -> Optional[str]:
        is_long = position.quantity > 0
        price = position.current_price

        if position.stop_loss is not None:
            if (is_long and price <= position.stop_loss) or (not is_long and price >= position.stop_loss):
                return "stop_loss"

        if position.take_profit is not None:
            if (is_long and price >= position.take_profit) or (not is_long and price <= position.take_profit):
                return "take_profit"

        cost = position.entry_price * abs(position.quantity)
        pnl_pct = position.unrealized_pnl / cost if cost else 0.0
        if pnl_pct < -self.limits.stop_loss_percent / 100:
            return "dynamic_stop_loss"
        if pnl_pct > self.limits.take_profit_percent / 100:
            return "dynamic_take_profit"
        return None

    def _close_locked(self, symbol: str, exit_price: float, reason: str) -> Optional[ClosedTrade]:
        position = self._positions.pop(symbol, None)
        if position is None:
            return None

        pnl = (exit_price - position.entry_price) * position.quantity
        self._realized_total += pnl
        self._realized_today += pnl

        trade = ClosedTrade(
            symbol=symbol,
            quantity=position.quantity,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            timestamp=self._clock(),
            reason=reason,
        )
        self._trades.append(trade)
        self._trade_count += 1
        self._trade_pnl_total += pnl
        if pnl > 0:
            self._trade_wins += 1
        self._best_trade = pnl if self._best_trade is None else max(self._best_trade, pnl)
        self._worst_trade = pnl if self._worst_trade is None else min(self._worst_trade, pnl)
        self._record_equity_locked()

        logger.info(
            "risk_position_closed",
            extra={"symbol": symbol, "exit_price": exit_price, "pnl": round(pnl, 2), "reason": reason},
        )
        return trade

    def close_position(self, symbol: str, exit_price: float, reason: str = "manual") -> Optional[ClosedTrade]:
        if exit_price <= 0:
            raise ValueError("exit_price must be positive")
        with self._lock:
            return self._close_locked(symbol, exit_price, reason)

    def reset_daily_metrics(self) -> None:
        """Start a new trading day."""
        with self._lock:
            self._realized_today = 0.0
        logger.info("risk_daily_reset")

    def emergency_stop(self) -> list[ClosedTrade]:
        """Close every open position at its last price."""
        closed: list[ClosedTrade] = []
        with self._lock:
            logger.warning("risk_emergency_stop", extra={"positions": len(self._positions)})
            for symbol, position in list(self._positions.items()):
                trade = self._close_locked(symbol, position.current_price, "emergency_stop")
                if trade:
                    closed.append(trade)
        return closed

    def positions(self) -> dict[str, Position]:
        with self._lock:
            return {symbol: replace(p) for symbol, p in self._positions.items()}

    def trades(self) -> list[ClosedTrade]:
        """Most recent closed trades, at most TRADES_MAXLEN."""
        with self._lock:
            return list(self._trades)

    # =========================================================================
    # Metrics
    # =========================================================================

    def calculate_risk_metrics(self) -> RiskMetrics:
        """Point-in-time snapshot; does not mutate state."""
        with self._lock:
            exposure = {s: p.market_value for s, p in self._positions.items()}
            unrealized = sum(p.unrealized_pnl for p in self._positions.values())
            equity = self._equity_locked()
            history = list(self._history)
            peak = max(self._peak_equity, equity)
            realized_today = self._realized_today

        portfolio_value = sum(exposure.values())
        returns = equity_returns(history)

        sharpe = 0.0
        var = 0.0
        if len(history) >= MIN_HISTORY_FOR_STATS and len(returns) >= 2:
            vol = pstdev(returns)
            if vol > 0:
                sharpe = fmean(returns) / vol * math.sqrt(TRADING_DAYS)
            ordered = sorted(returns)
            var = abs(ordered[int((1 - VAR_CONFIDENCE) * len(ordered))])

        return RiskMetrics(
            portfolio_value=portfolio_value,
            daily_pnl=realized_today + unrealized,
            max_drawdown=max(max_drawdown(history + [equity]), 0.0),
            current_drawdown=(peak - equity) / peak if peak > 0 else 0.0,
            sharpe_ratio=sharpe,
            var_estimate=var,
            correlation_risk=sum((v / portfolio_value) ** 2 for v in exposure.values()) if portfolio_value > 0 else 0.0,
            leverage=portfolio_value / equity if equity > 0 else 0.0,
            equity=equity,
            exposure_by_asset=exposure,
        )

    def limit_breaches(self, metrics: Optional[RiskMetrics] = None) -> list[LimitBreach]:
        """Every limit the given (or current) metrics violate."""
        metrics = metrics or self.calculate_risk_metrics()
        limits = self.limits
        breaches: list[LimitBreach] = []

        if metrics.daily_pnl < -limits.daily_loss_limit:
            breaches.append(LimitBreach("daily_loss", metrics.daily_pnl, -limits.daily_loss_limit))
        if metrics.current_drawdown > limits.max_drawdown:
            breaches.append(LimitBreach("max_drawdown", metrics.current_drawdown, limits.max_drawdown))
        if metrics.leverage > limits.leverage_limit:
            breaches.append(LimitBreach("leverage", metrics.leverage, limits.leverage_limit))
        if len(metrics.exposure_by_asset) > limits.max_correlated_positions:
            breaches.append(LimitBreach(
                "correlated_positions", len(metrics.exposure_by_asset), limits.max_correlated_positions
            ))

        for symbol, value in metrics.exposure_by_asset.items():
            if value > limits.max_position_size:
                breaches.append(LimitBreach(f"position_size:{symbol}", value, limits.max_position_size))
            if metrics.equity > 0 and value / metrics.equity > limits.concentration_limit:
                breaches.append(LimitBreach(
                    f"concentration:{symbol}", value / metrics.equity, limits.concentration_limit
                ))

        return breaches

    def check_order(self, symbol: str, quantity: float, price: float) -> RiskCheck:
        """
        Would adding ``quantity`` of ``symbol`` at ``price`` stay inside limits?

        Evaluates the post-trade position for the symbol against the current
        portfolio. Pure: nothing is executed or recorded.
        """
        limits = self.limits
        metrics = self.calculate_risk_metrics()

        with self._lock:
            existing = self._positions.get(symbol)
            existing_qty = existing.quantity if existing else 0.0

        new_value = abs((existing_qty + quantity) * price)
        old_value = metrics.exposure_by_asset.get(symbol, 0.0)

        if new_value > limits.max_position_size:
            return RiskCheck(False, f"Position size {new_value:.2f} exceeds limit {limits.max_position_size:.2f}")

        if metrics.daily_pnl < -limits.daily_loss_limit:
            return RiskCheck(False, f"Daily loss limit reached: {metrics.daily_pnl:.2f}")

        if metrics.current_drawdown > limits.max_drawdown:
            return RiskCheck(
                False,
                f"Current drawdown {metrics.current_drawdown * 100:.2f}% exceeds limit {limits.max_drawdown * 100:.2f}%",
            )

        if metrics.equity <= 0:
            return RiskCheck(False, "No equity available")

        concentration = new_value / metrics.equity
        if concentration > limits.concentration_limit:
            return RiskCheck(
                False,
                f"Concentration {concentration * 100:.2f}% exceeds limit {limits.concentration_limit * 100:.2f}%",
            )

        leverage = (metrics.portfolio_value - old_value + new_value) / metrics.equity
        if leverage > limits.leverage_limit:
            return RiskCheck(False, f"Leverage {leverage:.2f} exceeds limit {limits.leverage_limit:.2f}")

        if existing is None and len(metrics.exposure_by_asset) + 1 > limits.max_correlated_positions:
            return RiskCheck(False, f"Open positions would exceed {limits.max_correlated_positions}")

        return RiskCheck(True)

    # =========================================================================
    # Sizing
    # =========================================================================

    def kelly_position_size(
        self,
        win_rate: float,
        avg_win: float,
        avg_loss: float,
        portfolio_value: Optional[float] = None,
    ) -> float:
        """Quarter-Kelly notional, capped at max_position_size; 0 for no edge."""
        if avg_loss == 0 or avg_win <= 0:
            return 0.0
        capital = portfolio_value if portfolio_value is not None else self.calculate_risk_metrics().equity

        odds = avg_win / abs(avg_loss)
        kelly = (odds * win_rate - (1 - win_rate)) / odds
        size = kelly * KELLY_SAFETY_FACTOR * capital
        return max(0.0, min(size, self.limits.max_position_size))

    def volatility_weighted_size(
        self,
        volatility: float,
        target_volatility: float,
        portfolio_value: Optional[float] = None,
    ) -> float:
        """2% base allocation scaled by target / realized volatility, capped."""
        capital = portfolio_value if portfolio_value is not None else self.calculate_risk_metrics().equity
        base = capital * VOL_BASE_ALLOCATION
        size = base * target_volatility / (max(volatility, 0.0) + VOL_EPSILON)
        return max(0.0, min(size, self.limits.max_position_size))

    def pnl_summary(self) -> dict[str, Any]:
        """Closed-trade statistics from recorded trades."""
        with self._lock:
            count = self._trade_count
            total = self._trade_pnl_total
            wins = self._trade_wins
            best = self._best_trade
            worst = self._worst_trade
            recent = list(self._trades)[-10:]
            realized_today = self._realized_today

        if not count:
            return {"totalTrades": 0, "totalPnL": 0.0, "realizedToday": realized_today}

        return {
            "totalTrades": count,
            "totalPnL": total,
            "realizedToday": realized_today,
            "avgPnLPerTrade": total / count,
            "winRate": wins / count,
            "bestTrade": best,
            "worstTrade": worst,
            "recentTrades": [t.to_dict() for t in recent],
        }
