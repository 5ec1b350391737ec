"""Backfill orchestrator reconciling remote kline history with local storage."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from .clients.binance_rest import KlineConnector
from .errors import ApiConnectorError, BackfillError, StorageError
from .models import TradingPair
from .planner import MINUTE_MS, expected_open_times, group_contiguous
from .storage.analyzer import AbsenceAnalyzer
from .storage.postgres import PostgresDatabase

logger = logging.getLogger(__name__)


class BackfillOrchestrator:
    """
    Decides which ranges to fetch for each pair and persists them.

    A pass over one pair runs three independent steps:

    1. Leading/trailing backfill: fetch history older than the earliest
       stored kline and everything newer than the latest one.
    2. Expected open time maintenance: extend the ledger of open times that
       should exist up to the latest complete remote kline.
    3. Gap refill: fetch every contiguous run of expected open times that
       still has no kline.
    """

    def __init__(
        self,
        database: PostgresDatabase,
        connector: KlineConnector,
        analyzer: Optional[AbsenceAnalyzer] = None,
        interval_ms: int = MINUTE_MS
    ):
        self.database = database
        self.connector = connector
        self.analyzer = analyzer or AbsenceAnalyzer(database)
        self.interval_ms = interval_ms

    async def _remote_extents(self, pair: TradingPair) -> Tuple[int, int]:
        """First and last complete remote open times, or ApiConnectorError."""
        first_remote = await self.connector.fetch_first_timeframe(pair)
        last_remote = await self.connector.fetch_last_complete_timeframe(pair)

        if first_remote is None:
            logger.error(f"Could not fetch first remote timeframe for {pair}")
            raise ApiConnectorError(f"First remote timeframe for {pair} is unknown")

        if last_remote is None:
            logger.error(f"Could not fetch last remote timeframe for {pair}")
            raise ApiConnectorError(f"Last remote timeframe for {pair} is unknown")

        return first_remote, last_remote

    async def _fetch_and_store(self, pair: TradingPair, first: int, last: int) -> int:
        klines = await self.connector.fetch_all_in_timeframe(first, last, pair)
        logger.info(
            f"Fetched {len(klines)} klines for pair {pair}, inserting now",
            extra={"pair": str(pair), "range_start": first, "range_end": last, "rows": len(klines)}
        )

        inserted = await self.database.insert_klines(pair, klines)
        logger.info(f"Finished inserting klines for {pair}")
        return inserted

    async def fetch_and_insert(self, pair: TradingPair, first: int, last: int) -> int:
        """Fetch and persist ``[first, last]``; equal endpoints are a no-op."""
        if first == last:
            logger.info(f"First and last are equal for {pair}, no klines to be fetched")
            return 0

        if first > last:
            logger.warning(
                f"Skipping reversed range for {pair}",
                extra={"pair": str(pair), "range_start": first, "range_end": last}
            )
            return 0

        logger.info(f"Backfilling {pair}", extra={"pair": str(pair), "range_start": first, "range_end": last})
        return await self._fetch_and_store(pair, first, last)

    async def fetch_insert_leading_trailing(
        self,
        pair: TradingPair,
        remote: Optional[Tuple[int, int]] = None
    ) -> int:
        """
        Fetch klines missing before the first and after the last stored one.

        With an empty table the whole remote history is downloaded. Unknown
        remote extents are never substituted with a guessed range.

        Raises:
            ApiConnectorError: If a remote extent cannot be determined
            StorageError: If only one local extent is known
        """
        first_local = await self.database.get_first_timeframe(pair)
        last_local = await self.database.get_last_timeframe(pair)

        if first_local is None and last_local is None:
            # Cold start: full download from remote
            first_remote, last_remote = remote or await self._remote_extents(pair)
            return await self.fetch_and_insert(pair, first_remote, last_remote)

        if first_local is None or last_local is None:
            logger.error(f"Inconsistent local extents for {pair}: first={first_local}, last={last_local}")
            raise StorageError(f"Local extents for {pair} are inconsistent")

        # Warm start: leading history, then trailing new data
        first_remote, last_remote = remote or await self._remote_extents(pair)

        inserted = await self.fetch_and_insert(pair, first_remote, first_local)
        inserted += await self.fetch_and_insert(pair, last_local, last_remote)
        return inserted

    async def update_possible_open_times(
        self,
        pair: TradingPair,
        remote: Optional[Tuple[int, int]] = None
    ) -> int:
        """Extend the expected open time ledger up to the last remote kline."""
        first_remote, last_remote = remote or await self._remote_extents(pair)
        last_local_pot = await self.database.get_last_timeframe_pot(pair)

        start_time = first_remote if last_local_pot is None else max(last_local_pot, first_remote)
        times = expected_open_times(start_time, last_remote, self.interval_ms)

        logger.info(f"Generated {len(times)} possible open times for {pair} from {start_time} to {last_remote}")
        return await self.database.insert_possible_open_times(pair, times)

    async def fill_gaps(self, pair: TradingPair) -> Dict[str, int]:
        """Fetch every contiguous run of expected open times that has no kline."""
        missing = await self.analyzer.find_missing(pair)
        runs = group_contiguous(missing, self.interval_ms)

        inserted = 0
        for first, last in runs:
            logger.debug(f"Refilling gap for {pair}: [{first}, {last}]")
            inserted += await self._fetch_and_store(pair, first, last)

        if runs:
            logger.info(f"Refilled {inserted} of {len(missing)} missing klines for {pair} in {len(runs)} runs")

        return {"gaps_found": len(missing), "gap_runs": len(runs), "gaps_filled": inserted}

    async def backfill_pair(self, pair: TradingPair) -> Dict[str, Any]:
        """Run all backfill steps for one pair."""
        stats: Dict[str, Any] = {
            "pair": str(pair),
            "start_time": datetime.now().isoformat(),
            "klines_inserted": 0,
            "open_times_inserted": 0,
            "gaps_found": 0,
            "gap_runs": 0,
            "gaps_filled": 0,
        }

        remote = await self._remote_extents(pair)

        stats["klines_inserted"] = await self.fetch_insert_leading_trailing(pair, remote)
        stats["open_times_inserted"] = await self.update_possible_open_times(pair, remote)
        stats.update(await self.fill_gaps(pair))

        return stats

    async def run(self, pairs: Iterable[TradingPair]) -> Dict[TradingPair, Dict[str, Any]]:
        """
        Backfill every pair once.

        A pair that fails is logged and skipped; the remaining pairs still run.
        """
        results: Dict[TradingPair, Dict[str, Any]] = {}

        for pair in pairs:
            try:
                results[pair] = await self.backfill_pair(pair)
                results[pair]["status"] = "ok"
                logger.info(f"Backfill completed for {pair}: {results[pair]}")

            except BackfillError as e:
                logger.error(f"Backfill failed for {pair}: {e}", exc_info=True, extra={"pair": str(pair)})
                results[pair] = {"pair": str(pair), "status": "error", "error": str(e)}

        return results
