"""Timestamp arithmetic for paginated kline requests and gap bookkeeping."""

import logging
import time
from typing import Iterable, List, Optional, Tuple

from .errors import IncorrectArgumentOrderError, UnalignedTimeframeError

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000

# Binance kline intervals supported by the pipeline
INTERVAL_MS = {
    '1m': MINUTE_MS,
    '3m': 3 * MINUTE_MS,
    '5m': 5 * MINUTE_MS,
    '15m': 15 * MINUTE_MS,
    '30m': 30 * MINUTE_MS,
    '1h': 60 * MINUTE_MS,
    '2h': 120 * MINUTE_MS,
    '4h': 240 * MINUTE_MS,
    '1d': 1440 * MINUTE_MS,
}

# Maximum number of klines Binance returns per request
MAX_PAGE_SIZE = 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def is_aligned(timestamp: int, interval_ms: int = MINUTE_MS) -> bool:
    return timestamp % interval_ms == 0


def validate_range(start: int, end: int, interval_ms: int = MINUTE_MS) -> None:
    """Raise if either bound is off-boundary or the bounds are swapped."""
    for timestamp in (start, end):
        if not is_aligned(timestamp, interval_ms):
            raise UnalignedTimeframeError(timestamp, interval_ms)

    if start > end:
        raise IncorrectArgumentOrderError(start, end)


def next_boundary(timestamp: int, interval_ms: int = MINUTE_MS) -> int:
    """Start of the interval following the one containing ``timestamp``."""
    return timestamp - timestamp % interval_ms + interval_ms


def last_complete_timestamp(interval_ms: int = MINUTE_MS, current_ms: Optional[int] = None) -> int:
    """Open time of the most recent fully closed interval."""
    if current_ms is None:
        current_ms = now_ms()
    return (current_ms // interval_ms - 1) * interval_ms


def generate_timeframe_jumps(
    start: int,
    end: int,
    interval_ms: int = MINUTE_MS,
    page_size: int = MAX_PAGE_SIZE
) -> List[int]:
    """
    Enumerate page start times covering ``[start, end]``.

    Each page holds up to ``page_size`` candles, so consecutive starts are
    ``page_size * interval_ms`` apart. The final page may run past ``end``;
    callers are expected to drop candles beyond the requested range.

    Args:
        start: First open time, aligned to ``interval_ms``
        end: Last open time (inclusive), aligned to ``interval_ms``
        interval_ms: Candle interval length in milliseconds
        page_size: Candles per request

    Returns:
        Ascending list of page start timestamps

    Raises:
        UnalignedTimeframeError: If a bound is not on an interval boundary
        IncorrectArgumentOrderError: If ``start > end``
    """
    validate_range(start, end, interval_ms)

    step = page_size * interval_ms
    jumps = list(range(start, end + 1, step))

    logger.debug(f"Generated {len(jumps)} timeframe jumps for [{start}, {end}]")
    return jumps


def expected_open_times(start: int, end: int, interval_ms: int = MINUTE_MS) -> List[int]:
    """Every interval boundary in ``[start, end]``, inclusive."""
    if start > end:
        return []
    return list(range(start, end + 1, interval_ms))


def group_contiguous(timestamps: Iterable[int], interval_ms: int = MINUTE_MS) -> List[Tuple[int, int]]:
    """
    Collapse boundary timestamps into inclusive ``(first, last)`` runs.

    ``[0, 60000, 180000]`` with a one minute interval becomes
    ``[(0, 60000), (180000, 180000)]``.
    """
    runs: List[Tuple[int, int]] = []

    for timestamp in sorted(set(timestamps)):
        if runs and timestamp - runs[-1][1] == interval_ms:
            runs[-1] = (runs[-1][0], timestamp)
        else:
            runs.append((timestamp, timestamp))

    return runs
