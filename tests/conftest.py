import asyncio
from typing import Optional, Sequence

import pytest

from tickflow.config import Settings
from tickflow.errors import FeedFailure
from tickflow.feeds.base import FeedResult
from tickflow.pipeline import build_pipeline
from tickflow.types import OrderBookSnapshot, PredictionRecord, Tick

START_MS = 1_700_000_000_000


class FixedClock:
    """Deterministic ms clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeFeed:
    """Returns the configured ticks/books for the requested symbols on every fetch."""

    def __init__(
        self,
        name: str = "fake",
        ticks: Sequence[Tick] = (),
        books: Sequence[OrderBookSnapshot] = (),
        latency_ms: float = 1.0,
    ) -> None:
        self.name = name
        self.ticks = list(ticks)
        self.books = list(books)
        self.latency_ms = latency_ms
        self.calls = 0

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        self.calls += 1
        wanted = set(symbols)
        return FeedResult(
            ticks=[t for t in self.ticks if t.symbol in wanted],
            order_books=[b for b in self.books if b.symbol in wanted],
            latency_ms=self.latency_ms,
        )


class FailingFeed:
    def __init__(self, name: str = "broken", reason: str = "connection refused") -> None:
        self.name = name
        self.reason = reason

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        raise FeedFailure(self.name, self.reason)


class SlowFeed:
    def __init__(self, name: str = "slow", delay_sec: float = 1.0) -> None:
        self.name = name
        self.delay_sec = delay_sec

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        await asyncio.sleep(self.delay_sec)
        return FeedResult()


def make_ticks(
    symbol: str = "BTC/USD",
    n: int = 20,
    start_ts: Optional[int] = None,
    start_price: float = 100.0,
    step: float = 0.1,
    exchange: str = "fake",
    spacing_ms: int = 1000,
) -> list[Tick]:
    """n ticks ending just before START_MS, price rising by step."""
    if start_ts is None:
        start_ts = START_MS - n * spacing_ms
    ticks = []
    for i in range(n):
        price = start_price + i * step
        ticks.append(Tick(
            symbol=symbol,
            price=price,
            volume=1.0 + i,
            timestamp=start_ts + i * spacing_ms,
            exchange=exchange,
            bid=price - 0.05,
            ask=price + 0.05,
            spread=0.1,
        ))
    return ticks


def make_book(
    symbol: str = "BTC/USD",
    timestamp: int = START_MS,
    exchange: str = "fake",
    bids: Sequence[tuple[float, float]] = ((99.0, 5.0), (98.0, 5.0)),
    asks: Sequence[tuple[float, float]] = ((101.0, 1.0), (102.0, 1.0)),
) -> OrderBookSnapshot:
    return OrderBookSnapshot(
        symbol=symbol,
        bids=tuple(bids),
        asks=tuple(asks),
        timestamp=timestamp,
        exchange=exchange,
    )


def make_predictions(
    confidences: Sequence[float],
    latencies: Optional[Sequence[float]] = None,
    start_ts: int = START_MS - 600_000,
    spacing_ms: int = 1000,
    symbol: str = "BTC/USD",
) -> list[PredictionRecord]:
    """Prediction log entries, oldest first."""
    latencies = latencies or [0.5] * len(confidences)
    return [
        PredictionRecord(
            symbol=symbol,
            prediction=conf - 0.1,
            confidence=conf,
            latency_ms=lat,
            timestamp=start_ts + i * spacing_ms,
            model_version="linear-v1",
        )
        for i, (conf, lat) in enumerate(zip(confidences, latencies))
    ]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        FEEDS=["fake"],
        SYMBOLS=["BTC/USD"],
        RECORD_ENABLED=False,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def fake_feed() -> FakeFeed:
    return FakeFeed(ticks=make_ticks(n=20), books=[make_book()])


@pytest.fixture
def pipeline(settings, fake_feed, clock):
    return build_pipeline(settings, feeds={"fake": fake_feed}, clock=clock)
