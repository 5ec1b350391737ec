"""Kline Ingest Service - Binance klines to PostgreSQL backfill."""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from .backfill import BackfillOrchestrator
from .clients.binance_rest import BinanceRESTClient
from .config.settings import KlineIngestSettings, load_settings
from .cooldown import CooldownHandler
from .storage.analyzer import AbsenceAnalyzer
from .storage.postgres import PostgresDatabase
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)


class KlineIngestService:
    """Runs one backfill pass over the configured trading pairs."""

    def __init__(self, settings: KlineIngestSettings):
        self.settings = settings
        self.database = PostgresDatabase(settings.database)
        self.cooldown = CooldownHandler()
        self._task: Optional[asyncio.Task] = None

        setup_logging(settings.logging, settings.service_name)
        logger.info("Kline Ingest Service initialized")

    async def start(self):
        """Run the backfill pass, cancelling it on SIGINT/SIGTERM."""
        self._setup_signal_handlers()
        self._task = asyncio.create_task(self._run_once())

        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Backfill pass cancelled")

    async def _run_once(self):
        pairs = self.settings.binance.symbols
        logger.info(f"Starting backfill for {', '.join(str(p) for p in pairs)}")

        await self.database.initialize()
        try:
            await self.database.setup(pairs)

            async with BinanceRESTClient(self.settings.binance, self.cooldown) as client:
                analyzer = AbsenceAnalyzer(self.database)
                orchestrator = BackfillOrchestrator(
                    self.database,
                    client,
                    analyzer=analyzer,
                    interval_ms=self.settings.binance.interval_ms
                )

                results = await orchestrator.run(pairs)
                logger.info(f"REST client stats: {client.stats}")

            missing = await analyzer.analyze(pairs)
            for pair, result in results.items():
                logger.info(
                    f"{pair}: status={result.get('status')}, "
                    f"klines_inserted={result.get('klines_inserted', 0)}, "
                    f"still_missing={len(missing.get(pair, []))}"
                )
        finally:
            await self.database.close()

        logger.info("Kline Ingest Service finished")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            if self._task and not self._task.done():
                self._task.cancel()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                pass


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE", "config/local.yaml")

    try:
        settings = load_settings(config_file)
        service = KlineIngestService(settings)
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
