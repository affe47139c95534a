"""
Coda Explorer Indexer - process entry point
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys

from coda_explorer.config import IndexerConfig
from coda_explorer.database.connection import Database
from coda_explorer.database.ledger_store import PostgresLedgerStore
from coda_explorer.exceptions import ConfigurationError, ExplorerError, InitializationError, get_error_context
from coda_explorer.logging_config import setup_logging
from coda_explorer.rpc.client import CodaClient
from coda_explorer.services.exporter import BlockExporter
from coda_explorer.services.reconciler import Reconciler
from coda_explorer.services.scheduler import IndexerScheduler

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # not supported on this platform; KeyboardInterrupt still ends asyncio.run
            pass


async def run(config: IndexerConfig | None = None) -> None:
    """
    Run the indexer until SIGINT or SIGTERM.

    Raises:
        ConfigurationError: if the environment holds invalid settings
        InitializationError: if the database cannot be reached at startup
    """
    config = config or IndexerConfig.from_env()
    setup_logging(
        name="coda_explorer",
        log_file=config.log_file,
        level=config.log_level,
        environment=config.environment,
    )
    logger.info("Starting Coda explorer indexer...", extra={"event": "indexer.starting", "node": config.node_endpoint})

    db = Database(config.database_url, min_size=config.db_pool_min, max_size=config.db_pool_max)
    await db.connect()
    client: CodaClient | None = None
    scheduler: IndexerScheduler | None = None
    try:
        try:
            await db.run_migrations()
        except ExplorerError as e:
            raise InitializationError(f"could not create explorer tables: {e}") from e
        logger.info("Database migrations ensured")

        client = CodaClient(
            config.node_endpoint,
            timeout=config.node_timeout,
            connect_timeout=config.node_connect_timeout,
            ws_backoff_initial=config.ws_backoff_initial,
            ws_backoff_max=config.ws_backoff_max,
        )
        store = PostgresLedgerStore(db)
        exporter = BlockExporter(store, client)
        reconciler = Reconciler(store, client, exporter)
        scheduler = IndexerScheduler(reconciler, client, store, config)

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await scheduler.start()
        logger.info("Coda explorer indexer started successfully!")

        await stop_event.wait()
        logger.info("Shutting down Coda explorer indexer...")
    finally:
        if scheduler:
            await scheduler.stop()
        if client:
            await client.close()
        await db.disconnect()


def main() -> None:
    try:
        asyncio.run(run())
    except (ConfigurationError, InitializationError) as e:
        logger.critical(f"Indexer failed to start: {e}", extra={"event": "indexer.fatal", **get_error_context(e)})
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
