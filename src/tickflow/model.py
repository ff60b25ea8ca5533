"""
Scoring Models
==============

Pluggable scoring functions behind the inference engine.

Feature normalization:
    Each known feature is mapped to [-1, 1] by (value - center) / scale,
    then clamped. Features without a documented scale (price levels, raw
    volume) are not fed to the model.

    feature               center   scale
    momentum              0.0      0.01     1% move saturates
    volatility            0.0      0.05     5% return stdev saturates
    price_sma_ratio       1.0      0.01     1% above/below sma_10 saturates
    order_flow_imbalance  0.0      1.0      already in [-1, 1]
    smart_money           0.0      1.0      already in [-1, 1]
    bid_ask_spread        0.0      0.001    10 bps saturates

Models return a raw activation; the engine applies tanh so that any model
honours the [-1, 1] output contract.

Usage:
    registry = ModelRegistry(store)
    registry.register(LinearSignalModel.default("linear-v1"))
    registry.deploy("linear-v1")
    model = registry.active()
"""

import logging
import threading
from typing import Mapping, Optional, Protocol, runtime_checkable

from tickflow.errors import NoActiveModel
from tickflow.storage import MarketStore
from tickflow.types import ModelDeployment
from tickflow.utils_time import now_ms

logger = logging.getLogger(__name__)

FEATURE_SCALES: dict[str, tuple[float, float]] = {
    "momentum": (0.0, 0.01),
    "volatility": (0.0, 0.05),
    "price_sma_ratio": (1.0, 0.01),
    "order_flow_imbalance": (0.0, 1.0),
    "smart_money": (0.0, 1.0),
    "bid_ask_spread": (0.0, 0.001),
}

DEFAULT_WEIGHTS: dict[str, float] = {
    "momentum": 0.4,
    "order_flow_imbalance": 0.3,
    "price_sma_ratio": 0.25,
    "smart_money": 0.2,
    "volatility": -0.1,
    "bid_ask_spread": -0.05,
}


def normalize_features(features: Mapping[str, float]) -> dict[str, float]:
    """Scale known features into [-1, 1]; unknown features are dropped."""
    normalized: dict[str, float] = {}
    for name, (center, scale) in FEATURE_SCALES.items():
        if name not in features:
            continue
        value = (features[name] - center) / scale
        normalized[name] = max(-1.0, min(1.0, value))
    return normalized


@runtime_checkable
class ScoringModel(Protocol):
    version: str

    def score(self, normalized: Mapping[str, float]) -> float:
        """Raw activation for normalized features."""
        ...


class LinearSignalModel:
    """
    Fixed-weight linear model: bias + sum(weight * feature).

    Features missing from the input contribute 0, so the same model serves
    both the full and the streaming feature sets.
    """

    def __init__(self, version: str, weights: Mapping[str, float], bias: float = 0.0) -> None:
        self.version = version
        self.weights = dict(weights)
        self.bias = bias

    @classmethod
    def default(cls, version: str = "linear-v1") -> "LinearSignalModel":
        return cls(version=version, weights=DEFAULT_WEIGHTS)

    def score(self, normalized: Mapping[str, float]) -> float:
        return self.bias + sum(
            weight * normalized.get(name, 0.0) for name, weight in self.weights.items()
        )


class ModelRegistry:
    """
    Loaded models plus the single active deployment.

    The deployment row lives in the store; the model objects live here.
    Deploying a version retires the previous one.
    """

    def __init__(self, store: MarketStore) -> None:
        self._store = store
        self._models: dict[str, ScoringModel] = {}
        self._lock = threading.Lock()

    def register(self, model: ScoringModel) -> None:
        with self._lock:
            self._models[model.version] = model
        logger.info("model_registered", extra={"model_version": model.version})

    def deploy(self, version: str, deployed_at: Optional[int] = None) -> ModelDeployment:
        """
        Make a registered model the active one.

        Raises:
            KeyError: version was never registered
        """
        with self._lock:
            if version not in self._models:
                raise KeyError(f"model {version} is not registered")

            previous = self._store.get_active_model()
            deployment = ModelDeployment(
                version=version,
                deployed_at=deployed_at if deployed_at is not None else now_ms(),
            )
            self._store.set_active_model(deployment)

        logger.info(
            "model_deployed",
            extra={
                "model_version": version,
                "retired_version": previous.version if previous else None,
            },
        )
        return deployment

    def active_deployment(self) -> Optional[ModelDeployment]:
        deployment = self._store.get_active_model()
        if deployment is None or deployment.status != "active":
            return None
        return deployment

    def active(self) -> ScoringModel:
        """
        Resolve the deployed model.

        Raises:
            NoActiveModel: nothing deployed, or the deployed version is not loaded
        """
        deployment = self.active_deployment()
        if deployment is None:
            raise NoActiveModel()

        with self._lock:
            model = self._models.get(deployment.version)
        if model is None:
            raise NoActiveModel(f"active model {deployment.version} is not loaded")
        return model
