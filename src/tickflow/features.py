"""
Feature Extractor Module
========================

Computes features from a trailing tick window and the latest order book:

Rolling (from ticks):
    sma_5, sma_10       simple moving averages of price
    momentum            (latest - first) / first over the window
    volatility          sample stdev of tick-to-tick simple returns
    price_sma_ratio     latest / sma_10
    volume_sma          mean volume over the trailing 10 ticks
    bid_ask_spread      spread relative to the latest price

Order book (top-N paired levels of the latest snapshot):
    spread              best ask - best bid
    order_flow_imbalance (sum bid - sum ask) / (sum bid + sum ask), in [-1, 1]
    smart_money         imbalance with each level weighted by its distance
                        from mid, exp(-10 * |px - mid| / mid), in [-1, 1]
    mid_price, micro_price

Both paths are pure functions of their input. Any division by zero yields
0, and FeatureVector rejects non-finite values.

Usage:
    extractor = FeatureExtractor(min_ticks=10)
    vector = extractor.extract(buffer.window("BTC/USD", 50), book)
"""

import math
from statistics import fmean, stdev
from typing import Optional, Sequence

from tickflow.errors import InsufficientData
from tickflow.types import FeatureVector, OrderBookSnapshot, Tick

# Liquidity weight decay per unit of relative distance from mid
DEPTH_DECAY = 10.0

FULL_FEATURES = (
    "sma_5",
    "sma_10",
    "momentum",
    "volatility",
    "price_sma_ratio",
    "volume_sma",
    "spread",
    "bid_ask_spread",
    "order_flow_imbalance",
    "smart_money",
    "mid_price",
    "micro_price",
)
STREAM_FEATURES = ("price", "volume", "spread", "momentum", "volatility")


def _safe_div(num: float, den: float) -> float:
    if den == 0:
        return 0.0
    result = num / den
    return result if math.isfinite(result) else 0.0


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def sma(prices: Sequence[float], n: int) -> float:
    """Mean of the trailing n prices (all of them if fewer)."""
    tail = prices[-n:]
    return fmean(tail) if tail else 0.0


def simple_returns(prices: Sequence[float]) -> list[float]:
    return [_safe_div(cur - prev, prev) for prev, cur in zip(prices, prices[1:])]


def return_volatility(prices: Sequence[float]) -> float:
    """Sample standard deviation of simple returns; 0 with fewer than 2 returns."""
    returns = simple_returns(prices)
    if len(returns) < 2:
        return 0.0
    return stdev(returns)


def momentum(prices: Sequence[float]) -> float:
    if not prices:
        return 0.0
    return _safe_div(prices[-1] - prices[0], prices[0])


def order_flow_imbalance(book: Optional[OrderBookSnapshot], topn: int = 10) -> float:
    if book is None:
        return 0.0
    bid_sum = sum(size for _, size in book.bids[:topn])
    ask_sum = sum(size for _, size in book.asks[:topn])
    return _clamp(_safe_div(bid_sum - ask_sum, bid_sum + ask_sum))


def mid_price(book: Optional[OrderBookSnapshot]) -> Optional[float]:
    if book is None or not book.bids or not book.asks:
        return None
    return (book.bids[0][0] + book.asks[0][0]) / 2


def micro_price(book: Optional[OrderBookSnapshot]) -> Optional[float]:
    """Size-weighted best-of-book price; falls back to mid on empty size."""
    if book is None or not book.bids or not book.asks:
        return None
    bid_px, bid_size = book.bids[0]
    ask_px, ask_size = book.asks[0]
    total = bid_size + ask_size
    if total <= 0:
        return (bid_px + ask_px) / 2
    return (bid_px * ask_size + ask_px * bid_size) / total


def smart_money(book: Optional[OrderBookSnapshot], topn: int = 10) -> float:
    """Liquidity-weighted imbalance over paired top-N levels, in [-1, 1]."""
    mid = mid_price(book)
    if mid is None or mid <= 0:
        return 0.0

    weighted_bid = 0.0
    weighted_ask = 0.0
    for (bid_px, bid_size), (ask_px, ask_size) in zip(book.bids[:topn], book.asks[:topn]):
        weighted_bid += bid_size * math.exp(-DEPTH_DECAY * abs(bid_px - mid) / mid)
        weighted_ask += ask_size * math.exp(-DEPTH_DECAY * abs(ask_px - mid) / mid)

    return _clamp(_safe_div(weighted_bid - weighted_ask, weighted_bid + weighted_ask))


def book_spread(book: Optional[OrderBookSnapshot]) -> Optional[float]:
    if book is None or not book.bids or not book.asks:
        return None
    return book.asks[0][0] - book.bids[0][0]


class FeatureExtractor:
    """
    Full and streaming feature paths.

    Args:
        min_ticks: Minimum window for ``extract`` (default: 10)
        stream_ticks: Trailing ticks used by ``extract_stream_features`` (default: 5)
        topn: Order book levels per side for imbalance features
    """

    def __init__(self, min_ticks: int = 10, stream_ticks: int = 5, topn: int = 10) -> None:
        self.min_ticks = min_ticks
        self.stream_ticks = stream_ticks
        self.topn = topn

    @staticmethod
    def _symbol_of(window: Sequence[Tick]) -> str:
        symbol = window[-1].symbol
        if any(tick.symbol != symbol for tick in window):
            raise ValueError("tick window mixes symbols")
        return symbol

    def extract(
        self,
        window: Sequence[Tick],
        book: Optional[OrderBookSnapshot] = None,
    ) -> FeatureVector:
        """
        Compute the full feature set.

        Args:
            window: Ticks for one symbol, oldest first
            book: Latest order book for the symbol, if any

        Raises:
            InsufficientData: window shorter than ``min_ticks``
        """
        if len(window) < self.min_ticks:
            symbol = window[-1].symbol if window else None
            raise InsufficientData(symbol, self.min_ticks, len(window))

        symbol = self._symbol_of(window)
        latest = window[-1]
        prices = [tick.price for tick in window]
        volumes = [tick.volume for tick in window]

        sma_10 = sma(prices, 10)

        spread = book_spread(book)
        if spread is None:
            spread = latest.spread if latest.spread is not None else 0.0
        tick_spread = latest.spread if latest.spread is not None else spread

        mid = mid_price(book)
        micro = micro_price(book)

        features = {
            "sma_5": sma(prices, 5),
            "sma_10": sma_10,
            "momentum": momentum(prices),
            "volatility": return_volatility(prices),
            "price_sma_ratio": _safe_div(latest.price, sma_10),
            "volume_sma": sma(volumes, 10),
            "spread": spread,
            "bid_ask_spread": _safe_div(tick_spread, latest.price),
            "order_flow_imbalance": order_flow_imbalance(book, self.topn),
            "smart_money": smart_money(book, self.topn),
            "mid_price": mid if mid is not None else latest.price,
            "micro_price": micro if micro is not None else latest.price,
        }

        return FeatureVector(symbol=symbol, timestamp=latest.timestamp, features=features)

    def extract_stream_features(self, buffer: Sequence[Tick]) -> FeatureVector:
        """
        Reduced feature set from the last ``stream_ticks`` ticks.

        Raises:
            InsufficientData: empty buffer
        """
        if not buffer:
            raise InsufficientData(None, 1, 0)

        window = buffer[-self.stream_ticks:]
        symbol = self._symbol_of(window)
        latest = window[-1]
        prices = [tick.price for tick in window]

        features = {
            "price": latest.price,
            "volume": latest.volume,
            "spread": latest.spread if latest.spread is not None else 0.0,
            "momentum": momentum(prices),
            "volatility": return_volatility(prices),
        }

        return FeatureVector(symbol=symbol, timestamp=latest.timestamp, features=features)
