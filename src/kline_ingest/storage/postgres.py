"""PostgreSQL storage for klines and expected open times."""

import asyncio
import logging
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import asyncpg
from asyncpg import Connection, Pool

from ..config.settings import DatabaseConfig
from ..errors import CannotCreateTransactionError, TransactionError
from ..models import Candle, TradingPair

logger = logging.getLogger(__name__)

# asyncpg raises InterfaceError for pool/connection misuse and asyncio.TimeoutError
# when command_timeout fires; neither is a PostgresError
DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def klines_table(pair: TradingPair) -> str:
    return f"klines_{pair.table_suffix}"


def pot_table(pair: TradingPair) -> str:
    """Table of possible open times (expected timestamps) for a pair."""
    return f"pot_{pair.table_suffix}"


def _chunks(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


def _inserted_count(status: str) -> int:
    """Row count from an ``INSERT 0 <n>`` command status."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresDatabase:
    """Handles PostgreSQL schema setup, batch inserts and extent queries."""

    def __init__(self, config: DatabaseConfig, pool: Optional[Pool] = None):
        self.config = config
        self.pool: Optional[Pool] = pool

        self.stats = {
            "klines_inserted": 0,
            "open_times_inserted": 0,
            "commits": 0,
            "write_errors": 0
        }

    async def initialize(self):
        """Initialize database connection pool."""
        logger.info("Initializing database connection pool")

        try:
            self.pool = await asyncpg.create_pool(
                dsn=self.config.url,
                min_size=self.config.pool_min_size,
                max_size=self.config.pool_max_size,
                command_timeout=self.config.command_timeout_seconds
            )
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            raise

        logger.info("Database connection pool initialized successfully")

    async def close(self):
        """Close database connection pool."""
        if self.pool:
            logger.info("Closing database connection pool")
            await self.pool.close()
            self.pool = None

    async def setup(self, pairs: Iterable[TradingPair]):
        """Create per-pair tables and indexes if they don't exist."""
        for pair in pairs:
            await self.setup_pair(pair)

    async def setup_pair(self, pair: TradingPair):
        klines = klines_table(pair)
        pot = pot_table(pair)

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {klines} (
                        time_open  BIGINT           NOT NULL
                            CONSTRAINT {klines}_pk PRIMARY KEY,
                        open       DOUBLE PRECISION NOT NULL,
                        high       DOUBLE PRECISION NOT NULL,
                        low        DOUBLE PRECISION NOT NULL,
                        close      DOUBLE PRECISION NOT NULL,
                        volume     DOUBLE PRECISION NOT NULL,
                        num_trades BIGINT           NOT NULL
                    )
                """)
                await conn.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS {klines}_time_open_uindex
                    ON {klines} (time_open)
                """)

                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {pot} (
                        time_open BIGINT NOT NULL
                            CONSTRAINT {pot}_pk PRIMARY KEY
                    )
                """)
                await conn.execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS {pot}_time_open_uindex
                    ON {pot} (time_open)
                """)

        logger.info(f"Tables {klines} and {pot} are ready")

    async def _insert_batched(self, table: str, query: str, rows: List[Tuple]) -> int:
        """
        Insert rows that are absent, committing every ``commit_every`` rows.

        Each chunk runs in its own transaction, so chunks committed before a
        failure stay committed.

        Returns:
            Number of rows actually inserted

        Raises:
            CannotCreateTransactionError: If no connection or transaction could be opened
            TransactionError: If a statement or commit fails mid-batch
        """
        if not rows:
            return 0

        try:
            conn: Connection = await self.pool.acquire()
        except DB_ERRORS as e:
            self.stats["write_errors"] += 1
            raise CannotCreateTransactionError(f"Could not acquire a connection for {table}") from e

        inserted = 0
        try:
            for chunk in _chunks(rows, self.config.commit_every):
                tx = conn.transaction()
                try:
                    await tx.start()
                except DB_ERRORS as e:
                    self.stats["write_errors"] += 1
                    raise CannotCreateTransactionError(f"Could not open a transaction on {table}") from e

                # Column-wise arrays for unnest()
                columns = [list(column) for column in zip(*chunk)]

                try:
                    status = await conn.execute(query, *columns)
                    await tx.commit()
                except DB_ERRORS as e:
                    self.stats["write_errors"] += 1
                    if not conn.is_closed():
                        await tx.rollback()
                    raise TransactionError(f"Batch insert into {table} failed after {inserted} rows") from e

                inserted += _inserted_count(status)
                self.stats["commits"] += 1
                logger.info(f"Committed {len(chunk)} rows into {table}")
        finally:
            await self.pool.release(conn)

        return inserted

    async def insert_klines(self, pair: TradingPair, candles: Sequence[Candle]) -> int:
        """Insert candles whose open time is not yet stored."""
        table = klines_table(pair)
        query = f"""
            INSERT INTO {table} (time_open, open, high, low, close, volume, num_trades)
            SELECT DISTINCT ON (r.time_open)
                   r.time_open, r.open, r.high, r.low, r.close, r.volume, r.num_trades
            FROM unnest(
                $1::bigint[], $2::double precision[], $3::double precision[], $4::double precision[],
                $5::double precision[], $6::double precision[], $7::bigint[]
            ) AS r(time_open, open, high, low, close, volume, num_trades)
            WHERE NOT EXISTS (
                SELECT 1 FROM {table} k WHERE k.time_open = r.time_open
            )
        """
        rows = [candle.as_record() for candle in candles]

        inserted = await self._insert_batched(table, query, rows)
        self.stats["klines_inserted"] += inserted

        logger.info(f"Inserted {inserted} of {len(rows)} klines for {pair}", extra={"pair": str(pair), "rows": inserted})
        return inserted

    async def insert_possible_open_times(self, pair: TradingPair, times: Sequence[int]) -> int:
        """Insert expected open times that are not yet stored."""
        table = pot_table(pair)
        query = f"""
            INSERT INTO {table} (time_open)
            SELECT DISTINCT r.time_open
            FROM unnest($1::bigint[]) AS r(time_open)
            WHERE NOT EXISTS (
                SELECT 1 FROM {table} p WHERE p.time_open = r.time_open
            )
        """
        rows = [(time_open,) for time_open in times]

        inserted = await self._insert_batched(table, query, rows)
        self.stats["open_times_inserted"] += inserted

        logger.info(
            f"Inserted {inserted} of {len(rows)} possible open times for {pair}",
            extra={"pair": str(pair), "rows": inserted}
        )
        return inserted

    async def _fetch_extent(self, query: str) -> Optional[int]:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.fetchval(query)
        except DB_ERRORS as e:
            logger.error(f"Error querying extent: {e}")
            return None

        return int(result) if result is not None else None

    async def get_first_timeframe(self, pair: TradingPair) -> Optional[int]:
        """Earliest stored open time, or None if the table is empty."""
        return await self._fetch_extent(f"SELECT MIN(time_open) FROM {klines_table(pair)}")

    async def get_last_timeframe(self, pair: TradingPair) -> Optional[int]:
        """Latest stored open time, or None if the table is empty."""
        return await self._fetch_extent(f"SELECT MAX(time_open) FROM {klines_table(pair)}")

    async def get_last_timeframe_pot(self, pair: TradingPair) -> Optional[int]:
        """Latest expected open time recorded for the pair."""
        return await self._fetch_extent(f"SELECT MAX(time_open) FROM {pot_table(pair)}")

    async def get_record_count(self, pair: TradingPair) -> int:
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(f"SELECT COUNT(*) FROM {klines_table(pair)}")
        return result or 0

    def get_stats(self):
        stats = self.stats.copy()

        if self.pool:
            stats["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "idle_size": self.pool.get_idle_size()
            }

        return stats
