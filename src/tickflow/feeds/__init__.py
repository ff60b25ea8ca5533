"""
Feeds
=====

Independent market-data sources queried by the FeedAggregator.

Components:
    - Feed: interface every source implements (name + async fetch)
    - FeedResult: ticks, order books and fetch latency of one call
    - BinanceFeed: Binance Spot REST snapshot feed
    - ReplayFeed: serves recorded raw records in batches
"""

from tickflow.feeds.base import Feed, FeedResult
from tickflow.feeds.binance import BinanceFeed
from tickflow.feeds.replay import ReplayFeed

__all__ = [
    "Feed",
    "FeedResult",
    "BinanceFeed",
    "ReplayFeed",
]
