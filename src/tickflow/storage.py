"""
Persistent Store Interface
==========================

The pipeline talks to persistence only through ``MarketStore``:

    ticks / order_books   upsert, keyed by (symbol, exchange, timestamp)
    predictions           append-only log
    alerts                append-only log; ``resolved`` flips via resolve_alert
    active_model          single row (version, deployed_at, status)

``InMemoryStore`` is the bundled implementation. It keeps bounded tables in
process memory and can mirror the append-only tables to JSONL through
StorageWriter. Readers only ever see committed rows: every write and every
read copy happens under one lock.

Thread Safety:
    InMemoryStore methods are thread-safe via internal lock.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict, defaultdict, deque
from dataclasses import replace
from typing import Iterable, Optional

from tickflow.errors import StorageWriteFailure
from tickflow.storage_writer import StorageWriter
from tickflow.types import DriftAlert, ModelDeployment, OrderBookSnapshot, PredictionRecord, Tick

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 100_000


class MarketStore(ABC):
    """Upsert/query store used by the pipeline."""

    @abstractmethod
    def upsert_ticks(self, ticks: Iterable[Tick]) -> int:
        """Insert or replace ticks. Returns rows written."""

    @abstractmethod
    def upsert_order_books(self, books: Iterable[OrderBookSnapshot]) -> int:
        """Insert or replace order book snapshots. Returns rows written."""

    @abstractmethod
    def ticks_since(self, since_ms: int, symbol: Optional[str] = None) -> list[Tick]:
        """Ticks with timestamp >= since_ms, ascending by timestamp."""

    @abstractmethod
    def tick_counts_since(self, since_ms: int) -> dict[str, int]:
        """Tick counts per exchange with timestamp >= since_ms."""

    @abstractmethod
    def append_prediction(self, record: PredictionRecord) -> None:
        ...

    @abstractmethod
    def predictions_since(self, since_ms: int, symbol: Optional[str] = None) -> list[PredictionRecord]:
        """Committed predictions with timestamp >= since_ms, in append order."""

    @abstractmethod
    def append_alert(self, alert: DriftAlert) -> None:
        ...

    @abstractmethod
    def unresolved_alerts(self) -> list[DriftAlert]:
        ...

    @abstractmethod
    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False for an unknown id."""

    @abstractmethod
    def set_active_model(self, deployment: ModelDeployment) -> None:
        ...

    @abstractmethod
    def get_active_model(self) -> Optional[ModelDeployment]:
        ...

    def close(self) -> None:
        pass


class InMemoryStore(MarketStore):
    """
    Bounded in-process store.

    Args:
        max_rows: Row cap per table; oldest rows are evicted first
        prediction_writer: Optional JSONL mirror for the prediction log
        alert_writer: Optional JSONL mirror for drift alerts
    """

    def __init__(
        self,
        max_rows: int = DEFAULT_MAX_ROWS,
        prediction_writer: Optional[StorageWriter] = None,
        alert_writer: Optional[StorageWriter] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._max_rows = max_rows

        self._ticks: OrderedDict[tuple[str, str, int], Tick] = OrderedDict()
        self._books: OrderedDict[tuple[str, str, int], OrderBookSnapshot] = OrderedDict()
        self._predictions: deque[PredictionRecord] = deque(maxlen=max_rows)
        self._alerts: OrderedDict[str, DriftAlert] = OrderedDict()
        self._active_model: Optional[ModelDeployment] = None

        self._prediction_writer = prediction_writer
        self._alert_writer = alert_writer

    @staticmethod
    def _evict(table: OrderedDict, max_rows: int) -> None:
        while len(table) > max_rows:
            table.popitem(last=False)

    def upsert_ticks(self, ticks: Iterable[Tick]) -> int:
        written = 0
        with self._lock:
            for tick in ticks:
                key = (tick.symbol, tick.exchange, tick.timestamp)
                self._ticks.pop(key, None)
                self._ticks[key] = tick
                written += 1
            self._evict(self._ticks, self._max_rows)
        return written

    def upsert_order_books(self, books: Iterable[OrderBookSnapshot]) -> int:
        written = 0
        with self._lock:
            for book in books:
                key = (book.symbol, book.exchange, book.timestamp)
                self._books.pop(key, None)
                self._books[key] = book
                written += 1
            self._evict(self._books, self._max_rows)
        return written

    def ticks_since(self, since_ms: int, symbol: Optional[str] = None) -> list[Tick]:
        with self._lock:
            rows = [
                tick for tick in self._ticks.values()
                if tick.timestamp >= since_ms and (symbol is None or tick.symbol == symbol)
            ]
        return sorted(rows, key=lambda tick: tick.timestamp)

    def tick_counts_since(self, since_ms: int) -> dict[str, int]:
        counts: dict[str, int] = defaultdict(int)
        with self._lock:
            for tick in self._ticks.values():
                if tick.timestamp >= since_ms:
                    counts[tick.exchange] += 1
        return dict(counts)

    def latest_order_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        with self._lock:
            books = [book for book in self._books.values() if book.symbol == symbol]
        return max(books, key=lambda book: book.timestamp) if books else None

    def append_prediction(self, record: PredictionRecord) -> None:
        with self._lock:
            self._predictions.append(record)
        self._mirror(self._prediction_writer, "predictions", record.to_dict())

    def predictions_since(self, since_ms: int, symbol: Optional[str] = None) -> list[PredictionRecord]:
        with self._lock:
            return [
                record for record in self._predictions
                if record.timestamp >= since_ms and (symbol is None or record.symbol == symbol)
            ]

    def append_alert(self, alert: DriftAlert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert
            self._evict(self._alerts, self._max_rows)
        self._mirror(self._alert_writer, "alerts", alert.to_dict())

    def unresolved_alerts(self) -> list[DriftAlert]:
        with self._lock:
            return [alert for alert in self._alerts.values() if not alert.resolved]

    def resolve_alert(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            resolved = replace(alert, resolved=True)
            self._alerts[alert_id] = resolved
        self._mirror(self._alert_writer, "alerts", resolved.to_dict())
        return True

    def set_active_model(self, deployment: ModelDeployment) -> None:
        with self._lock:
            self._active_model = deployment

    def get_active_model(self) -> Optional[ModelDeployment]:
        with self._lock:
            return self._active_model

    def close(self) -> None:
        for writer in (self._prediction_writer, self._alert_writer):
            if writer is not None:
                writer.close()

    @staticmethod
    def _mirror(writer: Optional[StorageWriter], table: str, row: dict) -> None:
        if writer is None:
            return
        try:
            writer.write(row)
        except OSError as e:
            raise StorageWriteFailure(table, str(e)) from e
