"""
Indexer scheduler - drives reconciliation from a timer and from node notifications
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from coda_explorer.config import IndexerConfig
from coda_explorer.database.ledger_store import LedgerStore
from coda_explorer.exceptions import ExplorerError, get_error_context
from coda_explorer.rpc.client import NodeClient
from coda_explorer.services.reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)


@dataclass
class SyncState:
    """Progress bookkeeping shared by the scheduler's workers."""

    last_known_height: int | None = None
    last_pass_at: datetime | None = None
    passes: int = 0
    failed_passes: int = 0


class IndexerScheduler:
    """
    Runs the indexer's long-lived workers.

    Both the timer and the notification queue end up in
    :meth:`run_pass`; the reconciler's lock serializes them. A failing pass
    is logged and retried on the next trigger.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        node_client: NodeClient,
        store: LedgerStore,
        config: IndexerConfig,
        statistics_job: Callable[[], Awaitable[Any]] | None = None,
        state: SyncState | None = None,
    ):
        self.reconciler = reconciler
        self.node_client = node_client
        self.store = store
        self.config = config
        self.statistics_job = statistics_job
        self.state = state or SyncState()
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=config.queue_size)
        self.running = False
        self.start_time: datetime | None = None
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        """Start the scheduler"""
        if self.state.last_known_height is None:
            self.state.last_known_height = await self.store.highest_block_height()

        self.running = True
        self.start_time = datetime.now(timezone.utc)
        workers = {
            "timer": self._timer_worker(),
            "watcher": self._watch_worker(),
            "notifications": self._notification_worker(),
            "status": self._status_worker(),
        }
        if self.statistics_job is not None:
            workers["statistics"] = self._statistics_worker()
        if self.config.orphan_retention_depth > 0:
            workers["prune"] = self._prune_worker()

        self._tasks = [asyncio.create_task(coro, name=f"indexer-{name}") for name, coro in workers.items()]
        logger.info(
            "Indexer scheduler started",
            extra={
                "event": "scheduler.started",
                "workers": sorted(workers),
                "last_known_height": self.state.last_known_height,
            },
        )

    async def stop(self):
        """Stop the scheduler"""
        self.running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Indexer scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self.running

    def get_uptime_hours(self) -> float:
        """Get scheduler uptime in hours"""
        if not self.start_time:
            return 0.0
        return (datetime.now(timezone.utc) - self.start_time).total_seconds() / 3600

    # ------------------------------------------------------------------ passes
    async def run_pass(self, lookback: int, hints: Iterable[str] = ()) -> ReconcileResult | None:
        """Run one reconciliation pass, returning None if it failed."""
        result = await self._attempt(lookback, hints)
        if result is None or result.tip_height is None:
            return result

        previous = self.state.last_known_height
        self.state.last_known_height = max(result.tip_height, previous or 0)
        if previous is None:
            return result

        gap = result.tip_height - previous
        catch_up = min(gap + self.config.lookback, self.config.startup_lookback)
        if gap >= self.config.lookback and catch_up > lookback:
            logger.info(
                "Node moved ahead by %s blocks, running catch-up pass",
                gap,
                extra={"event": "scheduler.catch_up", "gap": gap, "lookback": catch_up},
            )
            return await self._attempt(catch_up, ())
        return result

    async def _attempt(self, lookback: int, hints: Iterable[str]) -> ReconcileResult | None:
        self.state.passes += 1
        self.state.last_pass_at = datetime.now(timezone.utc)
        try:
            return await self.reconciler.reconcile(lookback, hints=hints)
        except ExplorerError as e:
            self.state.failed_passes += 1
            logger.warning(
                f"Reconciliation pass failed: {e}",
                extra={"event": "scheduler.pass_failed", **get_error_context(e)},
            )
        except Exception as e:
            self.state.failed_passes += 1
            logger.exception(f"Unexpected error in reconciliation pass: {e}")
        return None

    async def process_notifications(self) -> ReconcileResult | None:
        """Wait for at least one notification, drain the queue and run a single pass."""
        hints = [await self.queue.get()]
        while True:
            try:
                hints.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        logger.debug("Processing %s block notifications", len(hints))
        return await self.run_pass(self.config.lookback, hints=hints)

    async def refresh_daemon_status(self) -> bool:
        """Fetch and store a daemon status snapshot."""
        try:
            status = await self.node_client.fetch_daemon_status()
            await self.store.save_daemon_status(status)
        except ExplorerError as e:
            logger.warning(
                f"Daemon status refresh failed: {e}",
                extra={"event": "scheduler.status_failed", **get_error_context(e)},
            )
            return False
        logger.debug(
            "Daemon status stored",
            extra={"event": "scheduler.status_saved", "blockchain_length": status.blockchain_length},
        )
        return True

    # ----------------------------------------------------------------- workers
    async def _timer_worker(self):
        await self.run_pass(self.config.startup_lookback)
        while self.running:
            await asyncio.sleep(self.config.reconcile_interval)
            await self.run_pass(self.config.lookback)

    async def _watch_worker(self):
        while self.running:
            try:
                await self.node_client.watch_new_blocks(self.queue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Block notification watcher crashed: {e}")
            await asyncio.sleep(self.config.ws_backoff_max)

    async def _notification_worker(self):
        while self.running:
            await self.process_notifications()

    async def _status_worker(self):
        while self.running:
            try:
                await self.refresh_daemon_status()
            except Exception as e:
                logger.exception(f"Unexpected error refreshing daemon status: {e}")
            await asyncio.sleep(self.config.status_interval)

    async def _statistics_worker(self):
        while self.running:
            await asyncio.sleep(self.config.statistics_interval)
            try:
                await self.statistics_job()
            except Exception as e:
                logger.error(f"Statistics job failed: {e}")

    async def _prune_worker(self):
        while self.running:
            await asyncio.sleep(self.config.prune_interval)
            try:
                await self.reconciler.prune_orphans(self.config.orphan_retention_depth)
            except ExplorerError as e:
                logger.warning(
                    f"Orphan pruning failed: {e}",
                    extra={"event": "scheduler.prune_failed", **get_error_context(e)},
                )
