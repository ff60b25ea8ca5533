"""
Record Normalizers Module
=========================

Functions to convert raw per-feed records into canonical Tick and
OrderBookSnapshot records.

Every normalizer returns None (and logs why) for a record it cannot accept,
so a single bad record never aborts a feed fetch.

Supported inputs:
    - generic: dict records {symbol, price, volume, timestamp, bid?, ask?}
               and {symbol, bids, asks, timestamp}
    - binance: /api/v3/ticker/24hr and /api/v3/depth REST payloads
"""

import logging
import math
from typing import Any, Iterable, Optional

from tickflow.types import BookLevel, OrderBookSnapshot, Tick

logger = logging.getLogger(__name__)


def _to_float(value: Any) -> Optional[float]:
    """Parse a finite float from numbers or numeric strings; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (ValueError, TypeError):
        return None
    return result if math.isfinite(result) else None


def _to_levels(raw_levels: Any, side: str, symbol: str) -> list[BookLevel]:
    """
    Coerce raw levels into (price, size) tuples.

    Accepts [price, size] pairs or {"price", "size"} dicts. Levels with a
    non-positive price or a negative size are dropped.
    """
    levels: list[BookLevel] = []
    dropped = 0

    for raw in raw_levels or []:
        if isinstance(raw, dict):
            price = _to_float(raw.get("price"))
            size = _to_float(raw.get("size"))
        else:
            try:
                price = _to_float(raw[0])
                size = _to_float(raw[1])
            except (IndexError, TypeError, KeyError):
                price = size = None

        if price is None or size is None or price <= 0 or size < 0:
            dropped += 1
            continue
        levels.append((price, size))

    if dropped:
        logger.warning(
            "normalizer_levels_dropped",
            extra={"symbol": symbol, "side": side, "dropped": dropped},
        )
    return levels


# =============================================================================
# GENERIC NORMALIZERS
# =============================================================================

def normalize_tick(
    record: dict,
    exchange: str,
    default_ts_ms: Optional[int] = None,
) -> Optional[Tick]:
    """
    Normalize a generic tick record.

    Args:
        record: Raw record with symbol, price, volume, timestamp, bid?, ask?
        exchange: Feed identifier stamped on the tick
        default_ts_ms: Timestamp used when the record carries none

    Returns:
        Tick, or None when the record violates price > 0 / volume >= 0 or
        lacks required fields.
    """
    try:
        symbol = record.get("symbol")
        if not symbol or not isinstance(symbol, str):
            logger.warning("normalizer_missing_field", extra={"field": "symbol", "exchange": exchange})
            return None

        price = _to_float(record.get("price"))
        if price is None or price <= 0:
            logger.warning(
                "normalizer_invalid_price",
                extra={"symbol": symbol, "exchange": exchange, "price": record.get("price")},
            )
            return None

        volume = _to_float(record.get("volume", 0.0))
        if volume is None or volume < 0:
            logger.warning(
                "normalizer_invalid_volume",
                extra={"symbol": symbol, "exchange": exchange, "volume": record.get("volume")},
            )
            return None

        raw_ts = record.get("timestamp", default_ts_ms)
        ts = _to_float(raw_ts)
        if ts is None:
            logger.warning("normalizer_missing_field", extra={"field": "timestamp", "symbol": symbol})
            return None

        bid = _to_float(record.get("bid"))
        ask = _to_float(record.get("ask"))
        if bid is not None and ask is not None:
            spread: Optional[float] = ask - bid
        else:
            spread = _to_float(record.get("spread"))

        return Tick(
            symbol=symbol,
            price=price,
            volume=volume,
            timestamp=int(ts),
            exchange=exchange,
            bid=bid,
            ask=ask,
            spread=spread,
        )

    except Exception as e:
        logger.exception("normalizer_error", extra={"type": "tick", "exchange": exchange, "error": str(e)})
        return None


def normalize_order_book(
    record: dict,
    exchange: str,
    default_ts_ms: Optional[int] = None,
) -> Optional[OrderBookSnapshot]:
    """
    Normalize a generic order book record.

    Bids are sorted price-descending and asks price-ascending regardless of
    the order the feed delivered them in.
    """
    try:
        symbol = record.get("symbol")
        if not symbol or not isinstance(symbol, str):
            logger.warning("normalizer_missing_field", extra={"field": "symbol", "exchange": exchange})
            return None

        ts = _to_float(record.get("timestamp", default_ts_ms))
        if ts is None:
            logger.warning("normalizer_missing_field", extra={"field": "timestamp", "symbol": symbol})
            return None

        bids = _to_levels(record.get("bids"), "bid", symbol)
        asks = _to_levels(record.get("asks"), "ask", symbol)

        return OrderBookSnapshot(
            symbol=symbol,
            bids=tuple(sorted(bids, key=lambda level: level[0], reverse=True)),
            asks=tuple(sorted(asks, key=lambda level: level[0])),
            timestamp=int(ts),
            exchange=exchange,
        )

    except Exception as e:
        logger.exception("normalizer_error", extra={"type": "order_book", "exchange": exchange, "error": str(e)})
        return None


def normalize_records(
    records: Iterable[dict],
    exchange: str,
    default_ts_ms: Optional[int] = None,
) -> tuple[list[Tick], list[OrderBookSnapshot]]:
    """
    Split mixed raw records into ticks and order books.

    Records carrying "bids" or "asks" are books, the rest are ticks.
    Rejected records are skipped.
    """
    ticks: list[Tick] = []
    books: list[OrderBookSnapshot] = []

    for record in records:
        if "bids" in record or "asks" in record:
            book = normalize_order_book(record, exchange, default_ts_ms)
            if book:
                books.append(book)
        else:
            tick = normalize_tick(record, exchange, default_ts_ms)
            if tick:
                ticks.append(tick)

    return ticks, books


# =============================================================================
# BINANCE NORMALIZERS
# =============================================================================

def to_exchange_symbol(symbol: str) -> str:
    """
    Map a canonical symbol to a Binance trading pair.

    Example:
        >>> to_exchange_symbol("BTC/USD")
        'BTCUSDT'
        >>> to_exchange_symbol("ETHUSDT")
        'ETHUSDT'
    """
    pair = symbol.replace("/", "").upper()
    if pair.endswith("USD"):
        pair += "T"
    return pair


def normalize_binance_depth(
    payload: dict,
    symbol: str,
    ts_ms: int,
    topn: int = 10,
) -> Optional[OrderBookSnapshot]:
    """
    Normalize a Binance /api/v3/depth payload.

    Args:
        payload: {"lastUpdateId": ..., "bids": [["px", "qty"], ...], "asks": [...]}
        symbol: Canonical symbol the book is stored under
        ts_ms: Receive timestamp (the REST depth payload carries none)
        topn: Levels kept per side
    """
    if not isinstance(payload, dict) or "bids" not in payload or "asks" not in payload:
        logger.warning("normalizer_missing_field", extra={"type": "depth", "exchange": "binance", "symbol": symbol})
        return None

    book = normalize_order_book(
        {
            "symbol": symbol,
            "bids": payload.get("bids", [])[:topn],
            "asks": payload.get("asks", [])[:topn],
            "timestamp": ts_ms,
        },
        exchange="binance",
    )
    return book


def normalize_binance_ticker(
    payload: dict,
    symbol: str,
    ts_ms: int,
    book: Optional[OrderBookSnapshot] = None,
) -> Optional[Tick]:
    """
    Normalize a Binance /api/v3/ticker/24hr payload.

    Best bid/ask come from the order book when one was fetched alongside,
    falling back to the ticker's bidPrice/askPrice.
    """
    if not isinstance(payload, dict):
        return None

    exchange_symbol = to_exchange_symbol(symbol)
    if payload.get("symbol") and payload["symbol"] != exchange_symbol:
        logger.warning(
            "normalizer_symbol_mismatch",
            extra={"expected": exchange_symbol, "got": payload.get("symbol"), "exchange": "binance"},
        )
        return None

    bid = payload.get("bidPrice")
    ask = payload.get("askPrice")
    if book is not None:
        best_bid = book.best_bid()
        best_ask = book.best_ask()
        if best_bid:
            bid = best_bid[0]
        if best_ask:
            ask = best_ask[0]

    return normalize_tick(
        {
            "symbol": symbol,
            "price": payload.get("lastPrice"),
            "volume": payload.get("volume"),
            "timestamp": payload.get("closeTime") or ts_ms,
            "bid": bid,
            "ask": ask,
        },
        exchange="binance",
    )
