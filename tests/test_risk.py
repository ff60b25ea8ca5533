import pytest
from conftest import FixedClock

from tickflow.risk import RiskManager, max_drawdown
from tickflow.types import RiskLimits


def _limits(**overrides):
    values = dict(
        max_position_size=100_000.0,
        daily_loss_limit=50_000.0,
        max_drawdown=0.15,
        concentration_limit=0.25,
        leverage_limit=2.0,
        stop_loss_percent=2.0,
        take_profit_percent=4.0,
        max_correlated_positions=5,
    )
    values.update(overrides)
    return RiskLimits(**values)


def _manager(**overrides):
    return RiskManager(_limits(**overrides), initial_capital=1_000_000.0, clock=FixedClock())


def test_limits_validated():
    with pytest.raises(ValueError):
        _limits(max_drawdown=1.5)
    with pytest.raises(ValueError):
        _limits(leverage_limit=0)


def test_daily_loss_breach():
    risk = _manager()
    risk.add_position("BTC/USD", 1000, 100.0)
    trade = risk.close_position("BTC/USD", 40.0)

    assert trade.pnl == -60_000.0
    metrics = risk.calculate_risk_metrics()
    assert metrics.daily_pnl == -60_000.0
    assert metrics.daily_pnl < -50_000.0

    breaches = risk.limit_breaches(metrics)
    assert "daily_loss" in [b.limit for b in breaches]
    assert risk.check_order("ETH/USD", 1, 10.0).allowed is False


def test_reset_daily_metrics_clears_realized_today():
    risk = _manager()
    risk.add_position("BTC/USD", 1000, 100.0)
    risk.close_position("BTC/USD", 40.0)
    risk.reset_daily_metrics()

    assert risk.calculate_risk_metrics().daily_pnl == 0.0
    assert risk.pnl_summary()["totalPnL"] == -60_000.0


def test_portfolio_metrics():
    risk = _manager()
    risk.add_position("BTC/USD", 500, 100.0)
    risk.add_position("ETH/USD", -100, 50.0)
    risk.update_price("BTC/USD", 101.0)

    metrics = risk.calculate_risk_metrics()
    assert metrics.exposure_by_asset == {"BTC/USD": 50_500.0, "ETH/USD": 5_000.0}
    assert metrics.portfolio_value == 55_500.0
    assert metrics.daily_pnl == pytest.approx(500.0)
    assert metrics.equity == pytest.approx(1_000_500.0)
    assert metrics.leverage == pytest.approx(55_500.0 / 1_000_500.0)
    assert metrics.correlation_risk == pytest.approx((50_500 / 55_500) ** 2 + (5_000 / 55_500) ** 2)
    # fewer than 30 history points
    assert metrics.sharpe_ratio == 0.0
    assert metrics.var_estimate == 0.0


def test_price_exits():
    risk = _manager()
    risk.add_position("BTC/USD", 10, 100.0, stop_loss=99.0)
    assert risk.update_price("BTC/USD", 99.5) is None
    assert risk.update_price("BTC/USD", 98.9).reason == "stop_loss"

    risk.add_position("ETH/USD", -10, 100.0, stop_loss=101.0, take_profit=99.0)
    assert risk.update_price("ETH/USD", 98.5).reason == "take_profit"

    risk.add_position("SOL/USD", 10, 100.0)
    assert risk.update_price("SOL/USD", 97.0).reason == "dynamic_stop_loss"

    risk.add_position("ADA/USD", 10, 100.0)
    assert risk.update_price("ADA/USD", 105.0).reason == "dynamic_take_profit"

    assert risk.positions() == {}
    assert len(risk.trades()) == 4


def test_drawdown_tracking():
    assert max_drawdown([100.0, 120.0, 90.0, 110.0]) == pytest.approx(0.25)
    assert max_drawdown([100.0]) == 0.0

    risk = _manager()
    risk.add_position("BTC/USD", 1000, 100.0)
    risk.close_position("BTC/USD", 80.0)
    metrics = risk.calculate_risk_metrics()
    assert metrics.current_drawdown == pytest.approx(0.02)
    assert metrics.max_drawdown == pytest.approx(0.02)


def test_position_and_concentration_breaches():
    risk = _manager(concentration_limit=0.05, max_correlated_positions=1)
    risk.add_position("BTC/USD", 1500, 100.0)
    risk.add_position("ETH/USD", 10, 100.0)

    limits = {b.limit for b in risk.limit_breaches()}
    assert "position_size:BTC/USD" in limits
    assert "concentration:BTC/USD" in limits
    assert "correlated_positions" in limits
    assert "concentration:ETH/USD" not in limits


def test_check_order():
    risk = _manager()
    assert risk.check_order("BTC/USD", 500, 100.0).allowed is True

    rejected = risk.check_order("BTC/USD", 2000, 100.0)
    assert rejected.allowed is False
    assert "Position size" in rejected.reason

    risk.add_position("BTC/USD", 900, 100.0)
    assert risk.check_order("BTC/USD", 200, 100.0).allowed is False


def test_emergency_stop_closes_everything():
    risk = _manager()
    risk.add_position("BTC/USD", 10, 100.0)
    risk.add_position("ETH/USD", 5, 50.0)

    closed = risk.emergency_stop()

    assert {t.symbol for t in closed} == {"BTC/USD", "ETH/USD"}
    assert all(t.reason == "emergency_stop" for t in closed)
    assert risk.positions() == {}


def test_position_sizing():
    risk = _manager()
    assert risk.kelly_position_size(0.6, 2.0, 1.0, portfolio_value=100_000.0) == pytest.approx(10_000.0)
    assert risk.kelly_position_size(0.2, 1.0, 1.0) == 0.0
    assert risk.kelly_position_size(0.6, 2.0, 0.0) == 0.0
    assert risk.volatility_weighted_size(0.019, 0.02, portfolio_value=100_000.0) == pytest.approx(2_000.0)
    assert risk.volatility_weighted_size(0.0, 1.0) == 100_000.0


def test_pnl_summary():
    risk = _manager()
    assert risk.pnl_summary()["totalTrades"] == 0

    risk.add_position("BTC/USD", 10, 100.0)
    risk.close_position("BTC/USD", 101.0)
    risk.add_position("BTC/USD", 10, 100.0)
    risk.close_position("BTC/USD", 99.5)

    summary = risk.pnl_summary()
    assert summary["totalTrades"] == 2
    assert summary["winRate"] == 0.5
    assert summary["bestTrade"] == pytest.approx(10.0)
    assert summary["worstTrade"] == pytest.approx(-5.0)
    assert summary["recentTrades"][0]["entryPrice"] == 100.0


def test_trade_log_is_bounded_but_summary_counts_every_trade(monkeypatch):
    monkeypatch.setattr("tickflow.risk.TRADES_MAXLEN", 5)
    risk = _manager()
    for i in range(12):
        risk.add_position("BTC/USD", 10, 100.0)
        risk.close_position("BTC/USD", 101.0 if i % 2 == 0 else 99.0)

    assert len(risk.trades()) == 5

    summary = risk.pnl_summary()
    assert summary["totalTrades"] == 12
    assert summary["totalPnL"] == pytest.approx(0.0)
    assert summary["winRate"] == 0.5
    assert summary["bestTrade"] == pytest.approx(10.0)
    assert summary["worstTrade"] == pytest.approx(-10.0)
    assert len(summary["recentTrades"]) == 5
