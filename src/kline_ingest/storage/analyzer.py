"""Gap analysis between expected open times and stored klines."""

import logging
from typing import Dict, Iterable, List

from .postgres import DB_ERRORS, PostgresDatabase, klines_table, pot_table
from ..errors import StorageError
from ..models import TradingPair

logger = logging.getLogger(__name__)


class AbsenceAnalyzer:
    """Finds expected open times that have no stored kline."""

    def __init__(self, database: PostgresDatabase):
        self.database = database

    async def find_missing(self, pair: TradingPair) -> List[int]:
        """
        Expected open times without a matching kline, ascending.

        Raises:
            StorageError: If the gap query fails
        """
        pot = pot_table(pair)
        klines = klines_table(pair)

        try:
            async with self.database.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT {pot}.time_open
                    FROM {pot}
                    LEFT JOIN {klines} ON {pot}.time_open = {klines}.time_open
                    WHERE {klines}.time_open IS NULL
                    ORDER BY {pot}.time_open
                """)
        except DB_ERRORS as e:
            logger.error(f"Gap analysis failed for {pair}: {e}", extra={"pair": str(pair)})
            raise StorageError(f"Could not query missing open times for {pair}") from e

        missing = [int(row[0]) for row in rows]
        logger.info(
            f"Found {len(missing)} missing klines for {pair}",
            extra={"pair": str(pair), "rows": len(missing)}
        )
        return missing

    async def analyze(self, pairs: Iterable[TradingPair]) -> Dict[TradingPair, List[int]]:
        return {pair: await self.find_missing(pair) for pair in pairs}
