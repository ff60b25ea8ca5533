"""
Feed Aggregator
===============

Runs one ingestion cycle across independent feeds.

Cycle:
    1. Fetch every requested feed concurrently, each bounded by a timeout.
       A failing or slow feed is reported as status=error and contributes
       no data; it never aborts the other feeds.
    2. Barrier: merge only after every fetch completed or timed out.
    3. Pool ticks, stable-sort by timestamp (ties keep arrival order).
    4. Dedup on (symbol, exchange, timestamp // bucket_ms); first wins.
    5. Order books: latest snapshot per (symbol, exchange) wins.

Usage:
    aggregator = FeedAggregator({"binance": BinanceFeed(client)}, timeout_sec=5.0)
    result = await aggregator.aggregate(["BTC/USD"], ["binance"])
    response = result.to_response()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

from tickflow.errors import FeedFailure
from tickflow.feeds.base import Feed, FeedResult
from tickflow.metrics import Metrics
from tickflow.types import FeedHealth, OrderBookSnapshot, Tick
from tickflow.utils_time import bucket_ts, now_ms, perf_ms

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AggregationResult:
    """Deduplicated output of one ingestion cycle."""
    ticks: list[Tick]
    order_books: list[OrderBookSnapshot]
    feed_status: dict[str, FeedHealth] = field(default_factory=dict)
    timestamp: int = 0

    def to_response(self) -> dict[str, Any]:
        return {
            "tickCount": len(self.ticks),
            "orderBookCount": len(self.order_books),
            "feedStatus": {name: health.to_dict() for name, health in self.feed_status.items()},
            "timestamp": self.timestamp,
        }


def dedup_ticks(ticks: Iterable[Tick], bucket_ms: int = 10) -> list[Tick]:
    """
    Sort ticks by timestamp and drop duplicates within a time bucket.

    The key is (symbol, exchange, timestamp // bucket_ms). ``sorted`` is
    stable, so among equal timestamps the earlier-arriving tick is kept.

    Example:
        timestamps 1000, 1005, 2000 for one (symbol, exchange) -> 1000, 2000
    """
    seen: set[tuple[str, str, int]] = set()
    result: list[Tick] = []

    for tick in sorted(ticks, key=lambda t: t.timestamp):
        key = (tick.symbol, tick.exchange, bucket_ts(tick.timestamp, bucket_ms))
        if key in seen:
            continue
        seen.add(key)
        result.append(tick)

    return result


def merge_order_books(books: Iterable[OrderBookSnapshot]) -> list[OrderBookSnapshot]:
    """Keep the snapshot with the largest timestamp per (symbol, exchange)."""
    latest: dict[tuple[str, str], OrderBookSnapshot] = {}

    for book in books:
        current = latest.get(book.key)
        if current is None or book.timestamp > current.timestamp:
            latest[book.key] = book

    return list(latest.values())


class FeedAggregator:
    """
    Concurrent multi-feed fetch with failure isolation.

    Args:
        feeds: Feed implementations by identifier
        timeout_sec: Per-feed fetch timeout
        bucket_ms: Dedup bucket resolution
        stale_min_messages: Feeds returning fewer ticks are reported stale
        metrics: Optional Metrics sink for per-feed health
    """

    def __init__(
        self,
        feeds: Mapping[str, Feed],
        timeout_sec: float = 5.0,
        bucket_ms: int = 10,
        stale_min_messages: int = 1,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._feeds = dict(feeds)
        self.timeout_sec = timeout_sec
        self.bucket_ms = bucket_ms
        self.stale_min_messages = stale_min_messages
        self._metrics = metrics

        logger.info(
            "aggregator_initialized",
            extra={
                "feeds": list(self._feeds),
                "timeout_sec": timeout_sec,
                "bucket_ms": bucket_ms,
            },
        )

    @property
    def feed_names(self) -> list[str]:
        return list(self._feeds)

    async def _fetch_one(
        self,
        name: str,
        symbols: Sequence[str],
    ) -> tuple[Optional[FeedResult], FeedHealth]:
        """Fetch one feed; never raises except on cancellation."""
        feed = self._feeds.get(name)
        if feed is None:
            return None, FeedHealth(exchange=name, status="error", error="unknown feed")

        start = perf_ms()
        try:
            result = await asyncio.wait_for(feed.fetch(symbols), timeout=self.timeout_sec)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.warning(
                "aggregator_feed_timeout",
                extra={"exchange": name, "timeout_sec": self.timeout_sec},
            )
            return None, FeedHealth(exchange=name, status="error", error="timeout")
        except FeedFailure as e:
            logger.warning("aggregator_feed_failed", extra={"exchange": name, "error": e.reason})
            return None, FeedHealth(exchange=name, status="error", error=e.reason)
        except Exception as e:
            logger.warning(
                "aggregator_feed_failed",
                extra={"exchange": name, "error": str(e), "error_type": type(e).__name__},
            )
            return None, FeedHealth(exchange=name, status="error", error=str(e) or type(e).__name__)

        latency_ms = result.latency_ms or (perf_ms() - start)
        count = len(result.ticks)
        status = "stale" if count < self.stale_min_messages else "connected"

        return result, FeedHealth(
            exchange=name,
            status=status,
            latency_ms=latency_ms,
            message_count=count,
        )

    async def aggregate(
        self,
        symbols: Sequence[str],
        exchanges: Optional[Sequence[str]] = None,
    ) -> AggregationResult:
        """
        Run one ingestion cycle.

        Args:
            symbols: Canonical symbols to fetch
            exchanges: Feed identifiers; defaults to every configured feed

        Returns:
            AggregationResult with deduplicated ticks, merged books and
            one FeedHealth per requested feed.
        """
        names = list(dict.fromkeys(exchanges if exchanges is not None else self._feeds))
        start = perf_ms()

        outcomes = await asyncio.gather(*(self._fetch_one(name, symbols) for name in names))

        pooled_ticks: list[Tick] = []
        pooled_books: list[OrderBookSnapshot] = []
        feed_status: dict[str, FeedHealth] = {}

        # Pool in request order so arrival order is deterministic
        for name, (result, health) in zip(names, outcomes):
            feed_status[name] = health
            if self._metrics:
                self._metrics.observe_feed(health)
            if result is not None:
                pooled_ticks.extend(result.ticks)
                pooled_books.extend(result.order_books)

        ticks = dedup_ticks(pooled_ticks, self.bucket_ms)
        books = merge_order_books(pooled_books)

        logger.info(
            "aggregator_cycle_complete",
            extra={
                "symbols": list(symbols),
                "feeds": {name: health.status for name, health in feed_status.items()},
                "ticks_pooled": len(pooled_ticks),
                "ticks_deduped": len(ticks),
                "order_books": len(books),
                "elapsed_ms": round(perf_ms() - start, 3),
            },
        )

        return AggregationResult(
            ticks=ticks,
            order_books=books,
            feed_status=feed_status,
            timestamp=now_ms(),
        )
