"""
Feed Interface
==============

A feed is anything with a ``name`` and an async ``fetch(symbols)`` that
returns a FeedResult or raises. The aggregator owns timeouts and failure
isolation, so implementations should simply raise FeedFailure (or let any
other exception propagate) when they cannot deliver.
"""

from dataclasses import dataclass, field
from typing import Protocol, Sequence, runtime_checkable

from tickflow.types import OrderBookSnapshot, Tick


@dataclass(slots=True)
class FeedResult:
    """Output of one feed fetch."""
    ticks: list[Tick] = field(default_factory=list)
    order_books: list[OrderBookSnapshot] = field(default_factory=list)
    latency_ms: float = 0.0


@runtime_checkable
class Feed(Protocol):
    """Market-data source."""

    name: str

    async def fetch(self, symbols: Sequence[str]) -> FeedResult:
        ...
