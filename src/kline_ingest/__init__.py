"""
Kline Ingest - incremental candle backfill from Binance into PostgreSQL.

This package downloads fixed-interval price candles for a bounded set of
trading pairs, detects gaps against what is already stored, and backfills
exactly the missing ranges.
"""

__version__ = "1.0.0"
__author__ = "Bitcoin Pipeline Team"
