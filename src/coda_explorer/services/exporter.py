"""
Block exporter - copies one block and the accounts it touches into the store
"""
from __future__ import annotations

import logging

from coda_explorer.database.ledger_store import LedgerStore
from coda_explorer.exceptions import BlockExportError, ExplorerError
from coda_explorer.models import Account, Block
from coda_explorer.rpc.client import NodeClient

logger = logging.getLogger(__name__)


class BlockExporter:
    """
    Stores a block as non-canonical together with its child rows.

    Accounts referenced by the block are fetched from the node before any
    write, so a node outage leaves nothing half-written. Counters are not
    touched here; the reconciler owns them.
    """

    def __init__(self, store: LedgerStore, node_client: NodeClient):
        self.store = store
        self.node_client = node_client

    async def export(self, identifier: Block | str) -> bool:
        """
        Export a block given either its full detail or its state hash.

        Returns:
            True if the block was newly stored, False if it was already known
        """
        state_hash = identifier.state_hash if isinstance(identifier, Block) else identifier

        try:
            if await self.store.block_exists(state_hash):
                return False

            if isinstance(identifier, Block):
                block = identifier
            else:
                block = await self.node_client.fetch_block(state_hash)

            accounts: list[Account] = []
            for public_key in sorted(block.touched_accounts()):
                accounts.append(await self.node_client.fetch_account(public_key))

            for account in accounts:
                account.first_seen = block.timestamp
                account.last_seen = block.timestamp
                await self.store.save_account(account)

            block.canonical = False
            await self.store.save_block(block)
        except ExplorerError as exc:
            raise BlockExportError(
                f"failed to export block {state_hash}: {exc}",
                state_hash=state_hash,
                details={"state_hash": state_hash},
                recoverable=exc.recoverable,
            ) from exc

        logger.info(
            "Exported block",
            extra={
                "event": "exporter.block_exported",
                "state_hash": block.state_hash,
                "height": block.height,
                "accounts": len(accounts),
            },
        )
        return True
