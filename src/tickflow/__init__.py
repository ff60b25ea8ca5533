"""
Tickflow
========

Streaming market-data pipeline: multi-feed ingestion with deduplication,
feature extraction, low-latency signal inference, drift monitoring and
portfolio risk metrics.

Usage:
    python -m tickflow
"""

__version__ = "0.1.0"
__schema_version__ = "1.0"
