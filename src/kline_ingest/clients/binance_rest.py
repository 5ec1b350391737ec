"""Binance REST API client for kline backfill."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..config.settings import BinanceConfig
from ..cooldown import CooldownHandler
from ..errors import UnspecifiedError
from ..models import Candle, TradingPair, decode_klines
from ..planner import (
    MINUTE_MS,
    generate_timeframe_jumps,
    last_complete_timestamp,
    next_boundary,
    now_ms,
    validate_range,
)

logger = logging.getLogger(__name__)

HTTP_TOO_MANY_REQUESTS = 429
HTTP_IM_A_TEAPOT = 418  # Binance: IP auto-banned for ignoring 429s


class KlineConnector(ABC):
    """Source of historical klines for a trading pair."""

    @abstractmethod
    async def fetch_first_timeframe(self, pair: TradingPair) -> Optional[int]:
        """Open time of the earliest available candle, or None if unknown."""

    @abstractmethod
    async def fetch_last_complete_timeframe(self, pair: TradingPair) -> Optional[int]:
        """Open time of the latest complete candle, or None if unknown."""

    @abstractmethod
    async def fetch_all_in_timeframe(self, start: int, end: int, pair: TradingPair) -> List[Candle]:
        """All candles with open time in ``[start, end]``."""


class BinanceRESTClient(KlineConnector):
    """Binance REST API client for historical kline backfill."""

    KLINES_ENDPOINT = '/api/v3/klines'

    def __init__(
        self,
        config: BinanceConfig,
        cooldown: CooldownHandler,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], int] = now_ms
    ):
        self.config = config
        self.cooldown = cooldown
        self.session = session
        self._owns_session = session is None
        self._clock = clock

        self.stats = {
            "requests": 0,
            "failed_requests": 0,
            "rate_limited": 0,
            "banned": 0,
            "klines_fetched": 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
                connector=aiohttp.TCPConnector(limit=100, limit_per_host=30)
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    @property
    def interval_ms(self) -> int:
        return self.config.interval_ms

    async def _wait_for_cooldown(self):
        """Suspend the calling task until the shared cooldown window passes."""
        while not self.cooldown.can_request():
            wait_ms = max(self.cooldown.remaining_ms(), 1)
            logger.debug(f"Sleeping because of cooldown, until={self.cooldown.get_until()}")
            await asyncio.sleep(wait_ms / 1000)

    def _handle_throttle(self, status: int, headers) -> None:
        """Push the shared cooldown window out in response to a throttling status."""
        if status == HTTP_TOO_MANY_REQUESTS:
            self.stats["rate_limited"] += 1
            # request weight resets on the minute, regardless of kline interval
            until = next_boundary(self._clock(), MINUTE_MS)
            self.cooldown.set_cooldown_until(until)
            logger.warning(f"Rate limit exceeded, cooling down until {until}")

        elif status == HTTP_IM_A_TEAPOT:
            self.stats["banned"] += 1
            retry_after = headers.get('Retry-After') if headers is not None else None

            if retry_after is None:
                logger.warning("Temporarily banned (418) without Retry-After, cooldown unchanged")
                return

            try:
                until = int(retry_after)
            except (TypeError, ValueError):
                logger.warning(f"Temporarily banned (418) with unparseable Retry-After={retry_after!r}")
                return

            self.cooldown.set_cooldown_until(until)
            logger.warning(f"Temporarily banned (418), retry_after={until}")

    async def _get_klines(self, pair: TradingPair, params: Dict[str, Any]) -> Optional[List[Candle]]:
        """
        Make one cooldown-aware klines request.

        Returns decoded candles, or None on any transport, status or decode
        failure. Throttling statuses update the shared cooldown window.
        """
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        await self._wait_for_cooldown()

        url = f"{self.config.rest_base_url}{self.KLINES_ENDPOINT}"
        query = {'symbol': str(pair), 'interval': self.config.interval}
        query.update({key: str(value) for key, value in params.items()})

        self.stats["requests"] += 1

        try:
            async with self.session.get(url, params=query) as response:
                if response.status >= 400:
                    self.stats["failed_requests"] += 1
                    logger.debug(f"Klines request for {pair} {query} returned status {response.status}")
                    self._handle_throttle(response.status, response.headers)
                    return None

                payload = await response.json()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats["failed_requests"] += 1
            logger.debug(f"Bad request to {url} {query}: {e}")
            return None
        except ValueError as e:
            self.stats["failed_requests"] += 1
            logger.debug(f"Could not parse klines response for {pair} {query}: {e}")
            return None

        try:
            candles = decode_klines(payload)
        except (TypeError, ValueError) as e:
            self.stats["failed_requests"] += 1
            logger.debug(f"Could not decode klines for {pair} {query}: {e}")
            return None

        self.stats["klines_fetched"] += len(candles)
        return candles

    async def fetch_first_timeframe(self, pair: TradingPair) -> Optional[int]:
        candles = await self._get_klines(pair, {'startTime': 0, 'limit': 1})
        if candles is None or len(candles) != 1:
            logger.debug(f"Could not determine first timeframe for {pair}")
            return None

        time_open = candles[0].time_open
        logger.debug(f"First timeframe for {pair} is found to be {time_open}")
        return time_open

    async def fetch_last_complete_timeframe(self, pair: TradingPair) -> Optional[int]:
        """
        Open time of the latest complete candle.

        The newest kline Binance returns is usually still open, so two are
        requested and the earlier open time is used. A result newer than the
        last interval closed by the local clock cannot be complete and is
        treated as unknown.
        """
        candles = await self._get_klines(pair, {'limit': 2})
        if candles is None or len(candles) != 2:
            logger.debug(f"Could not determine last complete timeframe for {pair}")
            return None

        time_open = min(candles[0].time_open, candles[1].time_open)
        bound = last_complete_timestamp(self.interval_ms, self._clock())
        if time_open > bound:
            logger.warning(
                f"Last complete timeframe {time_open} for {pair} is past the last closed interval {bound}",
                extra={"pair": str(pair)}
            )
            return None

        logger.debug(f"Last complete timeframe for {pair} is found to be {time_open}")
        return time_open

    async def fetch_all_in_timeframe(self, start: int, end: int, pair: TradingPair) -> List[Candle]:
        """
        Fetch every candle with open time in ``[start, end]``.

        Pages are requested by a fixed pool of ``config.concurrency`` workers.
        A page that fails contributes no candles; the range is not retried as
        a whole. The result is in arrival order.

        Raises:
            UnalignedTimeframeError: If a bound is not on an interval boundary
            IncorrectArgumentOrderError: If ``start > end``
            UnspecifiedError: If page planning fails for any other reason
        """
        validate_range(start, end, self.interval_ms)

        try:
            jumps = generate_timeframe_jumps(start, end, self.interval_ms, self.config.page_limit)
        except (ValueError, OverflowError) as e:
            logger.debug(f"Timeframe jump generation failed for {pair}: {e}")
            raise UnspecifiedError(f"Could not plan pages for {pair} [{start}, {end}]") from e

        queue: asyncio.Queue = asyncio.Queue()
        for jump in jumps:
            queue.put_nowait(jump)

        worker_count = min(self.config.concurrency, len(jumps))
        logger.debug(f"Enqueued {len(jumps)} pages for {pair}, running {worker_count} workers")

        candles: List[Candle] = []
        candles_lock = asyncio.Lock()

        async def worker():
            while True:
                try:
                    page_start = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                page = await self._get_klines(
                    pair, {'startTime': page_start, 'limit': self.config.page_limit}
                )
                if page is None:
                    logger.debug(
                        f"Encountered empty response for {pair} page {page_start}",
                        extra={"pair": str(pair), "page_start": page_start}
                    )
                    continue

                in_range = [c for c in page if start <= c.time_open <= end]
                async with candles_lock:
                    candles.extend(in_range)

                logger.debug(
                    f"Fetched {pair} page {page_start} successfully, "
                    f"{len(in_range)} of {len(page)} klines kept after filtering",
                    extra={"pair": str(pair), "page_start": page_start, "rows": len(in_range)}
                )

        await asyncio.gather(*(worker() for _ in range(worker_count)))

        logger.info(
            f"Fetched {len(candles)} klines for {pair} in [{start}, {end}]",
            extra={"pair": str(pair), "range_start": start, "range_end": end, "rows": len(candles)}
        )
        return candles
