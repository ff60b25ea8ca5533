import pytest
from conftest import FixedClock, make_predictions, make_ticks

from tickflow.metrics import Metrics
from tickflow.model import LinearSignalModel, ModelRegistry
from tickflow.risk import RiskManager
from tickflow.status import StatusAggregator, uptime_ratio
from tickflow.storage import InMemoryStore
from tickflow.types import DriftAlert, RiskLimits

LIMITS = RiskLimits(
    max_position_size=100_000.0,
    daily_loss_limit=50_000.0,
    max_drawdown=0.15,
    concentration_limit=0.25,
    leverage_limit=2.0,
    stop_loss_percent=2.0,
    take_profit_percent=4.0,
    max_correlated_positions=5,
)


def _status(deploy=True, feeds=("fake",)):
    clock = FixedClock()
    store = InMemoryStore()
    registry = ModelRegistry(store)
    registry.register(LinearSignalModel.default("v1"))
    if deploy:
        registry.deploy("v1", deployed_at=clock())
    risk = RiskManager(LIMITS, clock=clock)
    status = StatusAggregator(store, registry, risk, feeds=list(feeds), metrics=Metrics(), clock=clock)
    return status, store, risk, clock


def test_empty_system_is_unhealthy():
    status, _, _, _ = _status(deploy=False)
    payload = status.get_system_status()

    assert payload["status"] == {"dataFeeds": False, "model": False, "inference": False, "overall": False}
    assert payload["details"]["model"]["reason"] == "No active model found"
    assert payload["details"]["latency"]["reason"] == "No recent predictions"


def test_healthy_system():
    status, store, _, _ = _status()
    store.upsert_ticks(make_ticks(n=20))
    for record in make_predictions([0.6] * 20, latencies=[0.5] * 19 + [1.0]):
        store.append_prediction(record)

    payload = status.get_system_status()

    assert payload["status"]["overall"] is True
    latency = payload["details"]["latency"]
    assert latency["avgLatency"] == pytest.approx(0.525)
    assert latency["maxLatency"] == 1.0
    assert latency["p95Latency"] == 1.0
    assert latency["sampleCount"] == 20


def test_feed_needs_more_than_ten_recent_ticks():
    status, store, _, clock = _status(feeds=("fake", "other"))
    store.upsert_ticks(make_ticks(n=20))
    store.upsert_ticks(make_ticks(n=10, exchange="other"))

    feeds = status.check_feeds(clock())
    by_name = {f["exchange"]: f for f in feeds["feeds"]}
    assert by_name["fake"]["healthy"] is True
    assert by_name["other"]["healthy"] is False
    assert by_name["other"]["tickCount"] == 10
    assert feeds["healthy"] is False

    clock.advance(10 * 60 * 1000)
    assert status.check_feeds(clock())["feeds"][0]["tickCount"] == 0


def test_slow_inference_and_stale_model():
    status, store, _, clock = _status()
    for record in make_predictions([0.6] * 20, latencies=[3.0] * 20):
        store.append_prediction(record)
    assert status.check_latency(clock())["healthy"] is False

    clock.advance(8 * 24 * 3600 * 1000)
    model = status.check_model(clock())
    assert model["healthy"] is False
    assert model["stale"] is True
    assert model["activeModel"] == "v1"


def test_metrics_payload():
    status, store, _, _ = _status()
    assert status.get_metrics()["predictions"] == {"count": 0}

    for record in make_predictions([0.4] * 12):
        store.append_prediction(record)
    for record in make_predictions([0.8] * 12, symbol="ETH/USD"):
        store.append_prediction(record)

    payload = status.get_metrics()
    assert payload["predictions"]["count"] == 24
    assert payload["predictions"]["avgConfidence"] == pytest.approx(0.6)
    assert payload["predictions"]["bySymbol"]["ETH/USD"]["count"] == 12
    assert payload["performance"]["predictionRate"] == 1.0
    assert 0.0 < payload["performance"]["systemUptime"] <= 1.0
    assert "pipeline" in payload


def test_alerts_grouped_by_severity():
    status, store, _, _ = _status()
    store.append_alert(DriftAlert(id="a", type="volatility", severity="high", message="m", timestamp=2))
    store.append_alert(DriftAlert(id="b", type="confidence", severity="medium", message="m", timestamp=1))
    store.append_alert(DriftAlert(id="c", type="confidence", severity="medium", message="m", timestamp=3))
    store.resolve_alert("b")

    payload = status.get_alerts()
    assert payload["totalUnresolved"] == 2
    assert [a["id"] for a in payload["alerts"]["high"]] == ["a"]
    assert [a["id"] for a in payload["alerts"]["medium"]] == ["c"]
    assert payload["alerts"]["critical"] == []


def test_pnl_payload():
    status, store, risk, _ = _status()
    risk.add_position("BTC/USD", 1000, 100.0)
    risk.close_position("BTC/USD", 40.0)
    risk.add_position("ETH/USD", 10, 50.0)
    for record in make_predictions([0.6] * 4):
        store.append_prediction(record)

    payload = status.get_pnl()
    assert payload["pnl"]["totalTrades"] == 1
    assert payload["pnl"]["predictionsGenerated"] == 4
    assert payload["pnl"]["tradingEfficiency"] == 0.25
    assert payload["risk"]["dailyPnL"] == -60_000.0
    assert payload["breaches"][0]["limit"] == "daily_loss"
    assert payload["positions"][0]["symbol"] == "ETH/USD"
    assert payload["limits"]["dailyLossLimit"] == 50_000.0


def test_uptime_ratio():
    now = 10 * 300_000
    assert uptime_ratio([], now) == 0.0
    records = make_predictions([0.5] * 5, start_ts=0, spacing_ms=1)
    assert uptime_ratio(records, now) == pytest.approx(0.5)
