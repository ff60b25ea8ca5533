"""
Binance Feed
============

Snapshot feed over the Binance Spot REST API.

Per symbol, one fetch issues:
    - GET /api/v3/depth?symbol=XXX&limit=N   -> OrderBookSnapshot
    - GET /api/v3/ticker/24hr?symbol=XXX     -> Tick (bid/ask from the book)

Symbols that fail are logged and skipped. If no symbol could be fetched the
whole fetch raises FeedFailure so the aggregator reports status=error.

Usage:
    client = RestClient(base_url=settings.BINANCE_REST_BASE, name="binance")
    feed = BinanceFeed(client, depth_limit=10)
    result = await feed.fetch(["BTC/USD", "ETH/USD"])
"""

import asyncio
import logging
from typing import Optional, Sequence

from tickflow.errors import FeedFailure
from tickflow.feeds.base import FeedResult
from tickflow.normalizers import (
    normalize_binance_depth,
    normalize_binance_ticker,
    to_exchange_symbol,
)
from tickflow.rest_client import RestClient, RestError
from tickflow.types import OrderBookSnapshot, Tick
from tickflow.utils_time import now_ms, perf_ms

logger = logging.getLogger(__name__)

DEPTH_PATH = "/api/v3/depth"
TICKER_PATH = "/api/v3/ticker/24hr"


class BinanceFeed:
    """
    Binance Spot REST feed.

    Args:
        client: RestClient bound to the Binance REST base URL
        depth_limit: Book levels requested and kept per side
        name: Feed identifier (default "binance")
    """

    def __init__(
        self,
        client: RestClient,
        depth_limit: int = 10,
        name: str = "binance",
    ) -> None:
        self.name = name
        self._client = client
        self._depth_limit = depth_limit

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        start = perf_ms()

        results = await asyncio.gather(
            *(self._fetch_symbol(symbol) for symbol in symbols),
            return_exceptions=True,
        )

        ticks: list[Tick] = []
        books: list[OrderBookSnapshot] = []
        errors: list[str] = []

        for symbol, result in zip(symbols, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                errors.append(f"{symbol}: {result}")
                logger.warning(
                    "binance_symbol_failed",
                    extra={"symbol": symbol, "error": str(result), "error_type": type(result).__name__},
                )
                continue

            tick, book = result
            if tick:
                ticks.append(tick)
            if book:
                books.append(book)

        if symbols and not ticks and not books and errors:
            raise FeedFailure(self.name, "; ".join(errors))

        return FeedResult(ticks=ticks, order_books=books, latency_ms=perf_ms() - start)

    async def _fetch_symbol(
        self,
        symbol: str,
    ) -> tuple[Optional[Tick], Optional[OrderBookSnapshot]]:
        pair = to_exchange_symbol(symbol)

        try:
            depth_payload = await self._client.get_json(
                DEPTH_PATH, params={"symbol": pair, "limit": self._depth_limit}
            )
            ticker_payload = await self._client.get_json(TICKER_PATH, params={"symbol": pair})
        except RestError as e:
            raise FeedFailure(self.name, f"{pair}: {e}") from e

        ts = now_ms()
        book = normalize_binance_depth(depth_payload, symbol, ts, topn=self._depth_limit)
        tick = normalize_binance_ticker(ticker_payload, symbol, ts, book=book)
        return tick, book
