"""
Time Utilities Module
=====================

Helpers for working with millisecond epoch timestamps.
All timestamps in tickflow are integer milliseconds.
"""

import time
from datetime import datetime, timezone


def now_ms() -> int:
    """
    Get current timestamp in milliseconds.

    Returns:
        Current Unix timestamp in milliseconds.
    """
    return int(time.time() * 1000)


def perf_ms() -> float:
    """
    Monotonic high-resolution clock in milliseconds.

    Use for measuring durations (inference latency), never for timestamps.
    """
    return time.perf_counter() * 1000.0


def bucket_ts(ts_ms: int, bucket_ms: int) -> int:
    """
    Index of the bucket a timestamp falls into.

    Args:
        ts_ms: Timestamp in milliseconds.
        bucket_ms: Bucket width in milliseconds.

    Returns:
        ts_ms // bucket_ms

    Example:
        >>> bucket_ts(1000, 10), bucket_ts(1005, 10), bucket_ts(1010, 10)
        (100, 100, 101)
    """
    if bucket_ms <= 0:
        raise ValueError("bucket_ms must be positive")
    return ts_ms // bucket_ms


def ms_to_iso(ts_ms: int) -> str:
    """Format a millisecond timestamp as ISO8601 UTC."""
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    )


# Common interval constants (in milliseconds)
INTERVAL_5M = 300_000
INTERVAL_1D = 86_400_000
