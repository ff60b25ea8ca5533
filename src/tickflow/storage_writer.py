"""
JSONL Table Mirror
==================

Appends the rows of one append-only table (prediction log or drift alerts)
to rotating JSONL files so a run can be replayed or audited later.

Rows are serialized on write and queued. The queue is written out when
``batch_size`` rows are pending or ``flush_interval_sec`` has passed since
the last write, and on close.

Files rotate at UTC midnight and whenever a file would grow past
``max_file_size_mb``:

    predictions_2024-01-31_120000.jsonl
    predictions_2024-01-31_120000_part2.jsonl

A failed write raises StorageWriteFailure and leaves the unwritten rows
queued, so the next flush retries them in order.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Optional

import orjson

from tickflow.errors import StorageWriteFailure

logger = logging.getLogger(__name__)


class _RotatingFile:
    """Currently open JSONL file of a table and its rotation state."""

    def __init__(self, table: str, max_bytes: int) -> None:
        self.table = table
        self.max_bytes = max_bytes
        self.path: Optional[Path] = None
        self.size = 0
        self.opened = 0
        self._handle: Optional[IO[bytes]] = None
        self._day: Optional[str] = None
        self._part = 1

    def _open(self, directory: Path, day: str) -> None:
        self.close()
        started = datetime.now(timezone.utc).strftime("%H%M%S")
        suffix = f"_part{self._part}" if self._part > 1 else ""
        path = directory / f"{self.table}_{day}_{started}{suffix}.jsonl"

        self._handle = open(path, "ab")
        self.path = path
        self.size = path.stat().st_size
        self._day = day
        self.opened += 1
        logger.info("mirror_file_opened", extra={"file": str(path), "part": self._part})

    def append(self, directory: Path, day: str, line: bytes) -> None:
        if self._handle is None or self._day != day:
            self._part = 1
            self._open(directory, day)
        elif self.size + len(line) > self.max_bytes:
            self._part += 1
            self._open(directory, day)

        self._handle.write(line)
        self.size += len(line)

    def sync(self) -> None:
        if self._handle is None:
            return
        self._handle.flush()
        os.fsync(self._handle.fileno())

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class StorageWriter:
    """
    Batching JSONL mirror for one table.

    Args:
        output_dir: Directory for the table's files (created on init)
        prefix: Table name; file prefix and the table reported on failure
        batch_size: Pending rows that trigger a write (default: 100)
        flush_interval_sec: Max seconds between writes (default: 5)
        max_file_size_mb: Size rotation threshold (default: 100)
    """

    def __init__(
        self,
        output_dir: str = "data/records",
        prefix: str = "records",
        batch_size: int = 100,
        flush_interval_sec: float = 5.0,
        max_file_size_mb: float = 100.0,
    ) -> None:
        self.output_dir = Path(output_dir)
        self.prefix = prefix
        self.batch_size = batch_size
        self.flush_interval_sec = flush_interval_sec

        self._file = _RotatingFile(prefix, int(max_file_size_mb * 1024 * 1024))
        self._pending: list[bytes] = []
        self._lock = threading.Lock()
        self._last_write = time.monotonic()
        self._rows_written = 0
        self._rows_dropped = 0

        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            "mirror_writer_initialized",
            extra={"output_dir": str(self.output_dir), "table": prefix, "batch_size": batch_size},
        )

    def write(self, row: dict) -> None:
        """
        Queue one row, writing the queue out when a batch is due.

        Raises:
            StorageWriteFailure: the due write failed (row stays queued)
        """
        try:
            line = orjson.dumps(row, default=str) + b"\n"
        except TypeError as e:
            self._rows_dropped += 1
            logger.warning("mirror_row_unserializable", extra={"table": self.prefix, "error": str(e)})
            return

        with self._lock:
            self._pending.append(line)
            due = (
                len(self._pending) >= self.batch_size
                or time.monotonic() - self._last_write >= self.flush_interval_sec
            )
            if due:
                self._write_pending()

    def flush(self) -> int:
        """Write every queued row. Returns the number of rows written."""
        with self._lock:
            return self._write_pending()

    def _write_pending(self) -> int:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        written = 0
        try:
            for line in self._pending:
                self._file.append(self.output_dir, day, line)
                written += 1
            self._file.sync()
        except OSError as e:
            logger.error(
                "mirror_write_failed",
                extra={"table": self.prefix, "error": str(e), "pending": len(self._pending) - written},
            )
            raise StorageWriteFailure(self.prefix, str(e)) from e
        finally:
            del self._pending[:written]
            self._rows_written += written

        self._last_write = time.monotonic()
        if written:
            logger.debug(
                "mirror_flushed",
                extra={"table": self.prefix, "rows": written, "file": str(self._file.path)},
            )
        return written

    def close(self) -> None:
        """Write what is queued and close the current file."""
        with self._lock:
            try:
                self._write_pending()
            finally:
                self._file.close()
                logger.info(
                    "mirror_writer_closed",
                    extra={
                        "table": self.prefix,
                        "total_written": self._rows_written,
                        "files": self._file.opened,
                    },
                )

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "table": self.prefix,
                "total_written": self._rows_written,
                "dropped": self._rows_dropped,
                "buffer_size": len(self._pending),
                "files": self._file.opened,
                "current_file": str(self._file.path) if self._file.path else None,
            }
