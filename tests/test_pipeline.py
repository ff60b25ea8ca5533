import asyncio

import pytest
from conftest import FailingFeed, FakeFeed, make_ticks

from tickflow.config import Settings
from tickflow.drift import INSUFFICIENT_DATA
from tickflow.errors import InsufficientData, NoActiveModel
from tickflow.pipeline import build_pipeline
from tickflow.types import Tick


def test_ingest_fills_buffer_and_store(pipeline, clock):
    response = asyncio.run(pipeline.ingest(["BTC/USD"], ["fake"]))

    assert response["success"] is True
    assert response["tickCount"] == 20
    assert response["orderBookCount"] == 1
    assert response["feedStatus"]["fake"]["status"] == "connected"
    assert pipeline.buffer.size("BTC/USD") == 20
    assert pipeline.store.tick_counts_since(0) == {"fake": 20}
    assert pipeline.latest_book("BTC/USD") is not None
    assert pipeline.metrics.snapshot()["cycles_total"] == 1


def test_ingest_validates_input(pipeline):
    with pytest.raises(ValueError):
        asyncio.run(pipeline.ingest([]))
    with pytest.raises(ValueError):
        asyncio.run(pipeline.ingest(["BTC/USD"], [""]))


def test_ingest_survives_failing_feed(settings, clock):
    pipeline = build_pipeline(
        settings,
        feeds={"fake": FakeFeed(ticks=make_ticks(n=5)), "broken": FailingFeed()},
        clock=clock,
    )
    response = asyncio.run(pipeline.ingest(["BTC/USD"]))

    assert response["tickCount"] == 5
    assert response["feedStatus"]["broken"]["status"] == "error"


def test_ingest_marks_positions(pipeline):
    pipeline.risk.add_position("BTC/USD", 10, 100.0)
    asyncio.run(pipeline.ingest(["BTC/USD"]))
    assert pipeline.risk.positions()["BTC/USD"].current_price == pytest.approx(101.9)


def test_predict_from_buffer(pipeline, clock):
    asyncio.run(pipeline.ingest(["BTC/USD"]))
    response = pipeline.infer("predict", {"symbol": "BTC/USD"})

    assert response["success"] is True
    assert response["symbol"] == "BTC/USD"
    assert response["modelVersion"] == "linear-v1"
    assert response["timestamp"] == clock()
    assert -1.0 <= response["prediction"] <= 1.0
    assert response["confidence"] == pytest.approx(min(abs(response["prediction"]) + 0.1, 0.95))
    assert len(pipeline.store.predictions_since(0)) == 1


def test_predict_with_supplied_features(pipeline):
    response = pipeline.infer("predict", {"symbol": "ETH/USD", "features": {"momentum": 0.005}})
    assert response["prediction"] > 0

    with pytest.raises(ValueError):
        pipeline.infer("predict", {"symbol": "ETH/USD", "features": [1, 2]})
    with pytest.raises(ValueError):
        pipeline.infer("predict", {})


def test_batch_predict_partial_errors(pipeline):
    asyncio.run(pipeline.ingest(["BTC/USD"]))
    response = pipeline.infer("batch_predict", {"symbols": ["BTC/USD", "ETH/USD"]})

    assert response["metadata"] == {"processed": 2, "successful": 1, "errors": 1}
    assert response["predictions"][1]["symbol"] == "ETH/USD"
    assert "error" in response["predictions"][1]


def test_stream_predict_rejects_bad_ticks(pipeline):
    response = pipeline.infer(
        "stream_predict",
        {
            "symbol": "ETH/USD",
            "ticks": [{"price": 10.0, "volume": 1.0}, {"price": -1, "volume": 1.0}, "bad", {"price": 10.5}],
        },
    )

    assert response["rejected"] == 2
    assert len(response["predictions"]) == 2
    assert response["bufferSize"] == 2
    assert all(p["confidence"] <= 0.9 for p in response["predictions"])


def test_unknown_actions(pipeline):
    with pytest.raises(ValueError, match="Unknown action: train"):
        pipeline.infer("train", {})
    with pytest.raises(ValueError, match="Unknown action: bogus"):
        pipeline.monitor("bogus")


def test_no_model_deployed(fake_feed, clock):
    settings = Settings(_env_file=None, FEEDS=["fake"], MODEL_AUTO_DEPLOY=False)
    pipeline = build_pipeline(settings, feeds={"fake": fake_feed}, clock=clock)

    with pytest.raises(NoActiveModel):
        pipeline.infer("predict", {"symbol": "BTC/USD", "features": {}})
    assert pipeline.monitor("status")["status"]["model"] is False


def test_monitoring_actions(pipeline):
    asyncio.run(pipeline.ingest(["BTC/USD"]))
    pipeline.infer("predict", {"symbol": "BTC/USD"})

    status = pipeline.monitor("status")
    assert status["status"]["dataFeeds"] is True
    assert status["status"]["model"] is True
    assert set(status["status"]) == {"dataFeeds", "model", "inference", "overall"}

    assert pipeline.monitor("metrics")["metrics"]["predictions"]["count"] == 1
    assert pipeline.monitor("drift")["drift"]["reason"] == INSUFFICIENT_DATA
    assert pipeline.monitor("pnl")["pnl"]["predictionsGenerated"] == 1

    alerts = pipeline.monitor("alerts")
    assert set(alerts["alerts"]) == {"critical", "high", "medium", "low"}


def test_resolve_alert(pipeline):
    pipeline.infer("predict", {"symbol": "BTC/USD", "features": {}})
    alert = pipeline.store.unresolved_alerts()[0]

    assert pipeline.resolve_alert(alert.id) == {"success": True, "alertId": alert.id, "resolved": True}
    assert pipeline.monitor("alerts")["totalUnresolved"] == 0


def test_recording_pipeline_writes_jsonl(tmp_path, fake_feed, clock):
    settings = Settings(
        _env_file=None, FEEDS=["fake"], RECORD_ENABLED=True, RECORD_DIR=str(tmp_path), RECORD_BATCH_SIZE=1
    )
    pipeline = build_pipeline(settings, feeds={"fake": fake_feed}, clock=clock)
    pipeline.infer("predict", {"symbol": "BTC/USD", "features": {}})
    asyncio.run(pipeline.close())

    assert len(list(tmp_path.glob("predictions_*.jsonl"))) == 1
    assert len(list(tmp_path.glob("alerts_*.jsonl"))) == 1


def test_ingest_collapses_ticks_in_one_bucket(settings, clock):
    ticks = [Tick("AAPL", 150.0, 1.0, ts, "binance") for ts in (1000, 1005, 2000)]
    pipeline = build_pipeline(
        settings, feeds={"binance": FakeFeed(name="binance", ticks=ticks)}, clock=clock
    )
    response = asyncio.run(pipeline.ingest(["AAPL"], ["binance"]))

    assert response["tickCount"] == 2
    assert [t.timestamp for t in pipeline.buffer.window("AAPL")] == [1000, 2000]


def test_repeated_polls_do_not_inflate_window(settings, clock):
    tick = Tick("AAPL", 100.0, 1.0, 1000, "binance")
    pipeline = build_pipeline(
        settings, feeds={"binance": FakeFeed(name="binance", ticks=[tick])}, clock=clock
    )
    for _ in range(10):
        asyncio.run(pipeline.ingest(["AAPL"], ["binance"]))

    assert pipeline.buffer.size("AAPL") == 1
    assert len(pipeline.store.ticks_since(0, symbol="AAPL")) == 1
    with pytest.raises(InsufficientData):
        pipeline.features_for("AAPL")
