"""
Replay Feed
===========

Serves recorded raw records through the normalizers, one batch per fetch.

Records are generic tick / order-book dicts (see normalizers). They can be
passed in directly or loaded from a JSONL file, one record per line. Once
the recording is exhausted every fetch returns an empty result, which the
aggregator reports as a stale feed.

Usage:
    feed = ReplayFeed.from_jsonl("data/recordings/2024-01-27.jsonl", name="replay")
    result = await feed.fetch(["BTC/USD"])
"""

import logging
import threading
from pathlib import Path
from typing import Iterable, Sequence

import orjson

from tickflow.feeds.base import FeedResult
from tickflow.normalizers import normalize_records
from tickflow.utils_time import perf_ms

logger = logging.getLogger(__name__)


class ReplayFeed:
    """
    Batch replay of recorded records.

    Args:
        records: Raw records in replay order
        name: Feed identifier stamped on every normalized record
        batch_size: Records consumed per fetch
    """

    def __init__(
        self,
        records: Iterable[dict],
        name: str = "replay",
        batch_size: int = 100,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.name = name
        self._records = list(records)
        self._batch_size = batch_size
        self._cursor = 0
        self._lock = threading.Lock()

    @classmethod
    def from_jsonl(cls, path: str | Path, name: str = "replay", batch_size: int = 100) -> "ReplayFeed":
        """Load records from a JSONL file, skipping unparsable lines."""
        records: list[dict] = []
        skipped = 0

        with open(path, "rb") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(orjson.loads(line))
                except orjson.JSONDecodeError:
                    skipped += 1

        logger.info(
            "replay_feed_loaded",
            extra={"path": str(path), "records": len(records), "skipped": skipped},
        )
        return cls(records, name=name, batch_size=batch_size)

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._records) - self._cursor

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        start = perf_ms()

        with self._lock:
            batch = self._records[self._cursor:self._cursor + self._batch_size]
            self._cursor += len(batch)

        wanted = set(symbols)
        ticks, books = normalize_records(
            (record for record in batch if record.get("symbol") in wanted),
            exchange=self.name,
        )
        return FeedResult(ticks=ticks, order_books=books, latency_ms=perf_ms() - start)
