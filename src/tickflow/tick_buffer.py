"""
Trailing Tick Buffer
====================

Per-symbol bounded ring of the most recent ticks.

Appends for one symbol are serialized by that symbol's lock; readers get an
immutable tuple snapshot and never see a partially-written window.

extend() is the ingestion path. Feeds are polled, so a tick can come back
on the next cycle; per (symbol, exchange) a tick is accepted only when its
timestamp bucket is newer than the last accepted one. append() is the
stream path and keeps every tick.

Usage:
    buffer = TickBuffer(maxlen=1000)
    buffer.extend(result.ticks)
    window = buffer.window("BTC/USD", 10)
"""

import threading
from collections import deque
from typing import Iterable, Optional

from tickflow.types import Tick
from tickflow.utils_time import bucket_ts


class TickBuffer:
    """
    Bounded trailing window per symbol; oldest ticks are evicted first.

    Args:
        maxlen: Ticks kept per symbol (default: 1000)
        bucket_ms: Dedup bucket for extend() (default: 10)
    """

    def __init__(self, maxlen: int = 1000, bucket_ms: int = 10) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be >= 1")
        self.maxlen = maxlen
        self.bucket_ms = bucket_ms
        self._buffers: dict[str, deque[Tick]] = {}
        self._locks: dict[str, threading.Lock] = {}
        # last accepted bucket by exchange, per symbol; guarded by the symbol lock
        self._last_bucket: dict[str, dict[str, int]] = {}
        self._registry_lock = threading.Lock()

    def _slot(self, symbol: str) -> tuple[deque[Tick], threading.Lock]:
        with self._registry_lock:
            if symbol not in self._buffers:
                self._buffers[symbol] = deque(maxlen=self.maxlen)
                self._locks[symbol] = threading.Lock()
                self._last_bucket[symbol] = {}
            return self._buffers[symbol], self._locks[symbol]

    def append(self, tick: Tick) -> int:
        """Append one tick. Returns the symbol's buffer size after append."""
        buf, lock = self._slot(tick.symbol)
        with lock:
            buf.append(tick)
            return len(buf)

    def extend(self, ticks: Iterable[Tick]) -> int:
        """
        Append polled ticks, skipping any already seen for their exchange.

        Returns:
            Number of ticks accepted
        """
        by_symbol: dict[str, list[Tick]] = {}
        for tick in ticks:
            by_symbol.setdefault(tick.symbol, []).append(tick)

        accepted = 0
        for symbol, items in by_symbol.items():
            buf, lock = self._slot(symbol)
            with self._registry_lock:
                seen = self._last_bucket[symbol]
            with lock:
                for tick in items:
                    bucket = bucket_ts(tick.timestamp, self.bucket_ms)
                    last = seen.get(tick.exchange)
                    if last is not None and bucket <= last:
                        continue
                    seen[tick.exchange] = bucket
                    buf.append(tick)
                    accepted += 1
        return accepted

    def window(self, symbol: str, n: Optional[int] = None) -> tuple[Tick, ...]:
        """
        Snapshot of the trailing ticks for a symbol, oldest first.

        Args:
            symbol: Canonical symbol
            n: Number of most recent ticks (default: whole buffer)
        """
        with self._registry_lock:
            buf = self._buffers.get(symbol)
            lock = self._locks.get(symbol)
        if buf is None:
            return ()

        with lock:
            snapshot = tuple(buf)

        if n is not None:
            return snapshot[-n:] if n > 0 else ()
        return snapshot

    def size(self, symbol: str) -> int:
        with self._registry_lock:
            buf = self._buffers.get(symbol)
            lock = self._locks.get(symbol)
        if buf is None:
            return 0
        with lock:
            return len(buf)

    def symbols(self) -> list[str]:
        with self._registry_lock:
            return list(self._buffers)
