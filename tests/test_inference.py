import math

import pytest
from conftest import FixedClock, make_ticks

from tickflow.drift import DriftMonitor
from tickflow.errors import InsufficientData, NoActiveModel
from tickflow.features import FeatureExtractor
from tickflow.inference import InferenceEngine, bounded_confidence
from tickflow.metrics import Metrics
from tickflow.model import LinearSignalModel, ModelRegistry, ScoringModel, normalize_features
from tickflow.storage import InMemoryStore
from tickflow.tick_buffer import TickBuffer
from tickflow.types import FeatureVector


def _engine(models=(), deploy=None, clock=None):
    clock = clock or FixedClock()
    store = InMemoryStore()
    metrics = Metrics()
    registry = ModelRegistry(store)
    for model in models:
        registry.register(model)
    if deploy:
        registry.deploy(deploy, deployed_at=clock())
    engine = InferenceEngine(
        registry,
        store,
        FeatureExtractor(),
        TickBuffer(),
        drift=DriftMonitor(store, metrics=metrics, clock=clock),
        metrics=metrics,
        clock=clock,
    )
    return engine, store, metrics


def _vector(symbol="BTC/USD", **features):
    return FeatureVector(symbol=symbol, timestamp=1, features=features)


def test_normalize_features_clamps_and_drops_unknown():
    normalized = normalize_features({"momentum": 0.5, "price_sma_ratio": 1.005, "sma_10": 100.0})
    assert normalized == {"momentum": 1.0, "price_sma_ratio": pytest.approx(0.5)}


def test_linear_model_is_a_scoring_model():
    model = LinearSignalModel.default("v1")
    assert isinstance(model, ScoringModel)
    assert model.score({}) == 0.0
    assert model.score({"momentum": 1.0, "volatility": 1.0}) == pytest.approx(0.3)


def test_predict_without_model_raises():
    engine, _, _ = _engine()
    with pytest.raises(NoActiveModel):
        engine.predict(_vector(momentum=0.001))


def test_deploy_unregistered_version_raises():
    _, store, _ = _engine()
    with pytest.raises(KeyError):
        ModelRegistry(store).deploy("missing")


def test_deploy_retires_previous():
    engine, store, _ = _engine(
        models=[LinearSignalModel.default("v1"), LinearSignalModel("v2", {}, bias=1.0)],
        deploy="v1",
    )
    registry = ModelRegistry(store)
    registry.register(LinearSignalModel("v2", {}, bias=1.0))
    registry.deploy("v2")
    assert store.get_active_model().version == "v2"

    prediction = engine.predict(_vector())
    assert prediction.model_version == "v2"


@pytest.mark.parametrize(
    "features",
    [
        {},
        {"momentum": 0.002, "order_flow_imbalance": 0.3},
        {"momentum": -0.02, "order_flow_imbalance": -1.0, "smart_money": -1.0},
        {"volatility": 0.5, "bid_ask_spread": 0.01},
    ],
)
def test_confidence_bound(features):
    engine, store, _ = _engine(models=[LinearSignalModel.default("v1")], deploy="v1")
    prediction = engine.predict(_vector(**features))

    assert -1.0 <= prediction.value <= 1.0
    assert prediction.confidence == pytest.approx(min(abs(prediction.value) + 0.1, 0.95))
    assert 0.1 <= prediction.confidence <= 0.95

    record = store.predictions_since(0)[-1]
    assert record.confidence == prediction.confidence
    assert record.model_version == "v1"
    assert record.features == features


def test_confidence_is_capped():
    engine, _, _ = _engine(models=[LinearSignalModel("hot", {}, bias=10.0)], deploy="hot")
    prediction = engine.predict(_vector())

    assert prediction.value == pytest.approx(math.tanh(10.0))
    assert prediction.confidence == 0.95


def test_low_confidence_and_volatility_alerts():
    engine, store, metrics = _engine(models=[LinearSignalModel.default("v1")], deploy="v1")
    engine.predict(_vector(volatility=0.08))

    alerts = {a.type: a for a in store.unresolved_alerts()}
    assert alerts["confidence"].severity == "medium"
    assert alerts["volatility"].severity == "high"
    assert alerts["volatility"].symbol == "BTC/USD"
    assert metrics.snapshot()["alerts_total"] == {"confidence": 1, "volatility": 1}


def test_batch_predict_reports_partial_errors():
    engine, _, metrics = _engine(models=[LinearSignalModel.default("v1")], deploy="v1")

    def source(symbol):
        if symbol == "ETH/USD":
            raise InsufficientData(symbol, 10, 3)
        return _vector(symbol, momentum=0.001)

    result = engine.batch_predict(["BTC/USD", "ETH/USD", "SOL/USD"], source)
    payload = result.to_dict()

    assert payload["metadata"] == {"processed": 3, "successful": 2, "errors": 1}
    assert payload["predictions"][1]["symbol"] == "ETH/USD"
    assert "insufficient data" in payload["predictions"][1]["error"]
    assert payload["predictions"][0]["modelVersion"] == "v1"
    assert payload["avgLatency"] == pytest.approx(payload["totalLatency"] / 2)
    assert metrics.snapshot()["prediction_errors_total"] == 1


def test_stream_predict_appends_and_caps():
    engine, store, _ = _engine(models=[LinearSignalModel("hot", {}, bias=10.0)], deploy="hot")
    result = engine.stream_predict("BTC/USD", make_ticks(n=3))

    assert result.buffer_size == 3
    assert len(result.predictions) == 3
    assert all(p.confidence == 0.9 for p in result.predictions)
    assert all(r.path == "stream" for r in store.predictions_since(0))
    assert result.to_dict()["bufferSize"] == 3


def test_stream_predict_rejects_foreign_symbol():
    engine, _, _ = _engine(models=[LinearSignalModel.default("v1")], deploy="v1")
    with pytest.raises(ValueError):
        engine.stream_predict("ETH/USD", make_ticks(n=1))


def test_bounded_confidence():
    assert bounded_confidence(0.0, 0.95) == 0.1
    assert bounded_confidence(-0.5, 0.95) == pytest.approx(0.6)
    assert bounded_confidence(1.0, 0.9) == 0.9
