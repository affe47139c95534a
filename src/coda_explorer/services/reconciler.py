"""
Chain reconciliation engine.

A pass compares the node's recent chain with the locally stored tail,
imports whatever is missing and then walks the local tail from the node tip
downwards, promoting the blocks that chain to the tip and orphaning the
canonical blocks that no longer do. Counter adjustments happen inside the
store together with each flag flip, so a pass interrupted at any point
leaves counters consistent with the canonical flags.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable

from coda_explorer.database.ledger_store import LedgerStore
from coda_explorer.exceptions import BlockExportError, ChainInconsistencyError, NodeResponseError
from coda_explorer.models import Block, BlockSummary
from coda_explorer.rpc.client import NodeClient
from coda_explorer.services.exporter import BlockExporter

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""

    lookback: int
    tip_hash: str | None = None
    tip_height: int | None = None
    imported: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.imported or self.promoted or self.orphaned)


class Reconciler:
    """Keeps the stored canonical chain in line with the node's best chain."""

    def __init__(self, store: LedgerStore, node_client: NodeClient, exporter: BlockExporter):
        self.store = store
        self.node_client = node_client
        self.exporter = exporter
        self._lock = asyncio.Lock()

    async def reconcile(self, lookback: int, hints: Iterable[str] = ()) -> ReconcileResult:
        """
        Run one reconciliation pass over the last ``lookback`` blocks.

        Args:
            lookback: Number of recent blocks to compare
            hints: State hashes announced by the node since the last pass

        Returns:
            ReconcileResult describing what changed

        Raises:
            BlockExportError: if the node became unreachable mid-import
            StoreError: if the store failed; the pass stops at that block
        """
        if lookback < 1:
            raise ValueError("lookback must be at least 1")

        async with self._lock:
            result = ReconcileResult(lookback=lookback)

            for state_hash in dict.fromkeys(hints):
                await self._export(state_hash, result)

            known = {s.state_hash for s in await self.store.recent_block_hashes(lookback)}
            node_blocks = await self.node_client.fetch_recent_blocks(lookback)
            if not node_blocks:
                logger.warning("Node returned no blocks", extra={"event": "reconciler.empty_node_tail"})
                return result

            node_blocks = sorted(node_blocks, key=lambda b: b.height)
            for block in node_blocks:
                if block.state_hash not in known:
                    await self._export(block, result)

            tip = max(node_blocks, key=lambda b: b.height)
            result.tip_hash = tip.state_hash
            result.tip_height = tip.height

            # every stored block from the bottom of the node tail up, including
            # fork siblings and blocks above the tip
            local_tail = await self.store.blocks_from_height(node_blocks[0].height)
            await self._walk(local_tail, tip.state_hash, result)

        if result.changed:
            logger.info(
                "Reconciliation pass changed the mirror",
                extra={
                    "event": "reconciler.pass",
                    "lookback": lookback,
                    "tip_hash": result.tip_hash,
                    "tip_height": result.tip_height,
                    "imported": len(result.imported),
                    "skipped": len(result.skipped),
                    "promoted": len(result.promoted),
                    "orphaned": len(result.orphaned),
                },
            )
        else:
            logger.debug("Reconciliation pass found nothing to do", extra={"event": "reconciler.noop"})
        return result

    async def _export(self, identifier: Block | str, result: ReconcileResult) -> None:
        try:
            if await self.exporter.export(identifier):
                result.imported.append(self._hash_of(identifier))
        except BlockExportError as exc:
            if not isinstance(exc.__cause__, NodeResponseError):
                raise
            logger.warning(
                f"Skipping block the node could not describe: {exc}",
                extra={"event": "reconciler.block_skipped", "state_hash": exc.state_hash},
            )
            result.skipped.append(exc.state_hash)

    @staticmethod
    def _hash_of(identifier: Block | str) -> str:
        return identifier.state_hash if isinstance(identifier, Block) else identifier

    async def _walk(self, local_tail: list[BlockSummary], tip_hash: str, result: ReconcileResult) -> None:
        """Flip canonical flags along the local tail, highest block first."""
        hashes = {s.state_hash for s in local_tail}
        if tip_hash not in hashes:
            logger.warning(
                "Node tip is not stored yet, deferring canonical walk",
                extra={"event": "reconciler.tip_missing", "tip_hash": tip_hash},
            )
            return

        expected = tip_hash
        last_height: int | None = None
        for summary in sorted(local_tail, key=lambda s: (-s.height, s.state_hash != tip_hash)):
            if expected not in hashes and last_height is not None and summary.height < last_height:
                # parent of the last matched block is outside the stored tail
                logger.debug(
                    "Parent %s not in local tail, stopping walk at height %s", expected, last_height
                )
                break

            if summary.state_hash == expected:
                if not summary.canonical:
                    block = await self._load(summary)
                    if await self.store.mark_canonical(block):
                        result.promoted.append(summary.state_hash)
                expected = summary.previous_state_hash
                last_height = summary.height
            elif summary.canonical:
                block = await self._load(summary)
                if await self.store.mark_orphaned(block):
                    result.orphaned.append(summary.state_hash)

    async def _load(self, summary: BlockSummary) -> Block:
        block = await self.store.get_block(summary.state_hash)
        if block is None:
            raise ChainInconsistencyError(
                f"block {summary.state_hash} vanished during reconciliation",
                details={"state_hash": summary.state_hash, "height": summary.height},
            )
        return block

    async def rollback(self, state_hash: str) -> bool:
        """Remove one block entirely, reverting its counters if it was canonical."""
        async with self._lock:
            block = await self.store.get_block(state_hash)
            if block is None:
                return False
            removed = await self.store.rollback_block(block)
        if removed:
            logger.info(
                "Rolled back block",
                extra={
                    "event": "reconciler.rollback",
                    "state_hash": state_hash,
                    "height": block.height,
                    "was_canonical": block.canonical,
                },
            )
        return removed

    async def prune_orphans(self, retention_depth: int, limit: int = 100) -> list[str]:
        """
        Delete orphaned blocks more than ``retention_depth`` below the highest stored block.

        A depth of zero or less keeps every orphan.
        """
        if retention_depth <= 0:
            return []

        pruned: list[str] = []
        async with self._lock:
            highest = await self.store.highest_block_height()
            if highest is None:
                return []
            for summary in await self.store.orphaned_blocks_below(highest - retention_depth, limit):
                block = await self.store.get_block(summary.state_hash)
                if block is None or block.canonical:
                    continue
                if await self.store.rollback_block(block):
                    pruned.append(summary.state_hash)

        if pruned:
            logger.info(
                "Pruned orphaned blocks",
                extra={"event": "reconciler.pruned", "count": len(pruned), "retention_depth": retention_depth},
            )
        return pruned
