"""
Error Taxonomy
==============

FeedFailure             - one feed fetch failed; isolated, never fails a cycle
InsufficientData        - not enough ticks for feature extraction; wait for more
NoActiveModel           - inference requested with no deployed model
InsufficientDriftSample - too few predictions for a drift verdict (internal)
StorageWriteFailure     - store write failed; logged and swallowed by callers
"""

from typing import Optional


class TickflowError(Exception):
    """Base error for the pipeline."""
    pass


class FeedFailure(TickflowError):
    """A single feed fetch failed or timed out."""

    def __init__(self, exchange: str, reason: str):
        super().__init__(f"feed {exchange} failed: {reason}")
        self.exchange = exchange
        self.reason = reason


class InsufficientData(TickflowError):
    """Fewer ticks available than a feature path requires."""

    def __init__(self, symbol: Optional[str], required: int, available: int):
        super().__init__(
            f"insufficient data for {symbol or 'window'}: "
            f"need {required} ticks, have {available}"
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class NoActiveModel(TickflowError):
    """No model deployment is active (or its model is not loaded)."""

    def __init__(self, detail: str = "no active model"):
        super().__init__(detail)


class InsufficientDriftSample(TickflowError):
    """Too few predictions in the lookback for a drift verdict."""

    def __init__(self, required: int, available: int):
        super().__init__(f"need {required} predictions, have {available}")
        self.required = required
        self.available = available


class StorageWriteFailure(TickflowError):
    """A write to the persistent store failed."""

    def __init__(self, table: str, reason: str):
        super().__init__(f"write to {table} failed: {reason}")
        self.table = table
        self.reason = reason
