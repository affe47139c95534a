"""
Tests for the indexer scheduler.

Covers:
- Notification coalescing
- Failure isolation between passes
- Catch-up passes after large gaps
- Worker lifecycle
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_block
from coda_explorer.config import IndexerConfig
from coda_explorer.exceptions import DatabaseError, NodeTransportError
from coda_explorer.services.reconciler import ReconcileResult
from coda_explorer.services.scheduler import IndexerScheduler, SyncState


def _config(**overrides):
    settings = dict(lookback=10, startup_lookback=1000, queue_size=10)
    settings.update(overrides)
    return IndexerConfig(**settings)


def _mock_reconciler(tip_height=5):
    reconciler = MagicMock()
    reconciler.reconcile = AsyncMock(return_value=ReconcileResult(lookback=10, tip_hash="tip", tip_height=tip_height))
    reconciler.prune_orphans = AsyncMock(return_value=[])
    return reconciler


class TestPasses:
    """Test run_pass and notification handling"""

    @pytest.mark.asyncio
    async def test_notifications_are_coalesced(self, store, node):
        """Test queued hashes are drained into a single pass"""
        reconciler = _mock_reconciler()
        scheduler = IndexerScheduler(reconciler, node, store, _config(), state=SyncState(last_known_height=5))
        for state_hash in ("A", "B", "C"):
            scheduler.queue.put_nowait(state_hash)

        await scheduler.process_notifications()

        reconciler.reconcile.assert_awaited_once_with(10, hints=["A", "B", "C"])
        assert scheduler.queue.empty()

    @pytest.mark.asyncio
    async def test_failed_pass_is_counted_and_swallowed(self, store, node):
        """Test an explorer error does not escape the scheduler"""
        reconciler = _mock_reconciler()
        reconciler.reconcile.side_effect = [NodeTransportError("down"), ReconcileResult(lookback=10)]
        scheduler = IndexerScheduler(reconciler, node, store, _config())

        assert await scheduler.run_pass(10) is None
        assert scheduler.state.failed_passes == 1

        assert await scheduler.run_pass(10) is not None
        assert scheduler.state.passes == 2
        assert scheduler.state.failed_passes == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self, store, node):
        """Test programming errors are logged instead of killing workers"""
        reconciler = _mock_reconciler()
        reconciler.reconcile.side_effect = RuntimeError("bug")
        scheduler = IndexerScheduler(reconciler, node, store, _config())

        assert await scheduler.run_pass(10) is None
        assert scheduler.state.failed_passes == 1

    @pytest.mark.asyncio
    async def test_large_gap_triggers_catch_up_pass(self, store, node):
        """Test a pass that finds the node far ahead widens the window"""
        reconciler = _mock_reconciler(tip_height=150)
        scheduler = IndexerScheduler(reconciler, node, store, _config(), state=SyncState(last_known_height=100))

        await scheduler.run_pass(10)

        assert reconciler.reconcile.await_count == 2
        assert reconciler.reconcile.await_args_list[1].args == (60,)
        assert scheduler.state.last_known_height == 150

    @pytest.mark.asyncio
    async def test_catch_up_is_capped_by_startup_lookback(self, store, node):
        """Test very large gaps are limited to the startup window"""
        reconciler = _mock_reconciler(tip_height=5000)
        scheduler = IndexerScheduler(reconciler, node, store, _config(), state=SyncState(last_known_height=100))

        await scheduler.run_pass(10)

        assert reconciler.reconcile.await_args_list[1].args == (1000,)

    @pytest.mark.asyncio
    async def test_small_gap_runs_single_pass(self, store, node):
        """Test normal progress does not trigger catch-up"""
        reconciler = _mock_reconciler(tip_height=103)
        scheduler = IndexerScheduler(reconciler, node, store, _config(), state=SyncState(last_known_height=100))

        await scheduler.run_pass(10)

        assert reconciler.reconcile.await_count == 1
        assert scheduler.state.last_known_height == 103

    @pytest.mark.asyncio
    async def test_refresh_daemon_status(self, store, node):
        """Test status snapshots are stored"""
        scheduler = IndexerScheduler(_mock_reconciler(), node, store, _config())

        assert await scheduler.refresh_daemon_status() is True
        assert store.statuses == [node.status]

    @pytest.mark.asyncio
    async def test_refresh_daemon_status_failure(self, store, node):
        """Test status failures are reported, not raised"""
        node.transport_down = True
        scheduler = IndexerScheduler(_mock_reconciler(), node, store, _config())

        assert await scheduler.refresh_daemon_status() is False
        assert store.statuses == []


class TestLifecycle:
    """Test starting and stopping workers"""

    @pytest.mark.asyncio
    async def test_start_runs_startup_pass_and_stop_cancels(self, store, node, reconciler):
        """Test the full worker set against the in-memory doubles"""
        node.set_chain(make_block("A", "genesis", 1))
        await store.save_block(make_block("old", "genesis", 0))
        scheduler = IndexerScheduler(reconciler, node, store, _config(reconcile_interval=60.0))

        await scheduler.start()
        assert scheduler.is_running()
        assert scheduler.state.last_known_height == 0

        for _ in range(50):
            if store.blocks.get("A") is not None and store.blocks["A"].canonical and store.statuses:
                break
            await asyncio.sleep(0.01)

        assert store.blocks["A"].canonical
        assert store.statuses
        assert scheduler.get_uptime_hours() >= 0.0

        await scheduler.stop()
        assert not scheduler.is_running()
        assert scheduler._tasks == []

    @pytest.mark.asyncio
    async def test_optional_workers(self, store, node):
        """Test pruning and statistics workers only start when configured"""
        statistics_job = AsyncMock()
        reconciler = _mock_reconciler()
        scheduler = IndexerScheduler(
            reconciler,
            node,
            store,
            _config(orphan_retention_depth=5, statistics_interval=0.01, prune_interval=0.01),
            statistics_job=statistics_job,
        )

        await scheduler.start()
        names = {task.get_name() for task in scheduler._tasks}
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert {"indexer-statistics", "indexer-prune"} <= names
        assert statistics_job.await_count >= 1
        reconciler.prune_orphans.assert_awaited_with(5)

    @pytest.mark.asyncio
    async def test_default_config_has_no_optional_workers(self, store, node):
        """Test the default worker set"""
        scheduler = IndexerScheduler(_mock_reconciler(), node, store, _config())

        await scheduler.start()
        names = {task.get_name() for task in scheduler._tasks}
        await scheduler.stop()

        assert names == {"indexer-timer", "indexer-watcher", "indexer-notifications", "indexer-status"}

    @pytest.mark.asyncio
    async def test_notification_worker_feeds_reconciler(self, store, node):
        """Test notifications from the node reach the reconciler as hints"""
        node.notifications = ["X", "Y"]
        reconciler = _mock_reconciler()
        scheduler = IndexerScheduler(reconciler, node, store, _config(), state=SyncState(last_known_height=5))

        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        hinted = [c.kwargs.get("hints") for c in reconciler.reconcile.await_args_list if c.kwargs.get("hints")]
        assert ["X", "Y"] in [list(h) for h in hinted]

    @pytest.mark.asyncio
    async def test_start_fails_when_store_unavailable(self, node):
        """Test startup surfaces a broken store"""
        store = MagicMock()
        store.highest_block_height = AsyncMock(side_effect=DatabaseError("down"))
        scheduler = IndexerScheduler(_mock_reconciler(), node, store, _config())

        with pytest.raises(DatabaseError):
            await scheduler.start()
        assert not scheduler.is_running()
