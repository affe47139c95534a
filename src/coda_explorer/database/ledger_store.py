"""LedgerStore protocol and its PostgreSQL implementation.

Every mutating operation runs in its own transaction. Promotion, demotion
and rollback lock the block row first so a repeated call is a no-op
instead of a second counter adjustment.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import asyncpg

from coda_explorer.database.connection import Database
from coda_explorer.exceptions import ChainInconsistencyError
from coda_explorer.models import (
    Account,
    Block,
    BlockSummary,
    CounterDelta,
    DaemonStatus,
    FeeTransfer,
    SnarkJob,
    UserJob,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class LedgerStore(Protocol):
    """Durable owner of blocks, child rows and accounts."""

    async def block_exists(self, state_hash: str) -> bool:
        ...

    async def save_block(self, block: Block) -> None:
        """Insert a block and its child rows; duplicates are ignored."""
        ...

    async def save_account(self, account: Account) -> None:
        """Upsert on-chain account fields, widening first/last seen."""
        ...

    async def recent_block_hashes(self, lookback: int) -> list[BlockSummary]:
        """Return the ``lookback`` highest blocks, descending by height."""
        ...

    async def blocks_from_height(self, height: int) -> list[BlockSummary]:
        """Return every block at or above ``height``, forks included, descending by height."""
        ...

    async def get_block(self, state_hash: str) -> Block | None:
        ...

    async def mark_canonical(self, block: Block) -> bool:
        """Flag a block canonical and apply its counters. False if already canonical."""
        ...

    async def mark_orphaned(self, block: Block) -> bool:
        """Clear the canonical flag and revert its counters. False if already orphaned."""
        ...

    async def rollback_block(self, block: Block) -> bool:
        """Delete a block and its child rows, demoting it first if canonical."""
        ...

    async def highest_block_height(self) -> int | None:
        ...

    async def orphaned_blocks_below(self, height: int, limit: int = 100) -> list[BlockSummary]:
        ...

    async def save_daemon_status(self, status: DaemonStatus) -> None:
        ...


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_INSERT_BLOCK = """
INSERT INTO blocks (
    statehash, canonical, previousstatehash, snarkedledgerhash, stagedledgerhash,
    coinbase, creator, slot, height, epoch, ts, totalcurrency,
    usercommandscount, snarkjobscount, feetransfercount
) VALUES ($1, FALSE, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
ON CONFLICT DO NOTHING;
"""

_INSERT_USER_JOB = """
INSERT INTO userjobs (blockstatehash, index, id, sender, recipient, memo, fee, amount, nonce, delegation)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
ON CONFLICT DO NOTHING;
"""

_INSERT_SNARK_JOB = """
INSERT INTO snarkjobs (blockstatehash, index, jobids, prover, fee)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT DO NOTHING;
"""

_INSERT_FEE_TRANSFER = """
INSERT INTO feetransfers (blockstatehash, index, recipient, fee)
VALUES ($1, $2, $3, $4)
ON CONFLICT DO NOTHING;
"""

_UPSERT_ACCOUNT = """
INSERT INTO accounts (
    publickey, balance, nonce, receiptchainhash, delegate, votingfor,
    txsent, txreceived, blocksproposed, snarkjobs, firstseen, lastseen
) VALUES ($1, $2, $3, $4, $5, $6, 0, 0, 0, 0, $7, $8)
ON CONFLICT (publickey) DO UPDATE SET
    balance = EXCLUDED.balance,
    nonce = EXCLUDED.nonce,
    receiptchainhash = EXCLUDED.receiptchainhash,
    delegate = EXCLUDED.delegate,
    votingfor = EXCLUDED.votingfor,
    firstseen = LEAST(EXCLUDED.firstseen, accounts.firstseen),
    lastseen = GREATEST(EXCLUDED.lastseen, accounts.lastseen);
"""

_SELECT_CANONICAL_FOR_UPDATE = "SELECT canonical FROM blocks WHERE statehash = $1 FOR UPDATE;"

_UPDATE_CANONICAL = "UPDATE blocks SET canonical = $2 WHERE statehash = $1;"

_ADJUST_COUNTERS = """
UPDATE accounts SET
    txsent = txsent + $2,
    txreceived = txreceived + $3,
    blocksproposed = blocksproposed + $4,
    snarkjobs = snarkjobs + $5
WHERE publickey = $1;
"""

_SELECT_RECENT = """
SELECT statehash, previousstatehash, height, canonical
FROM blocks
ORDER BY height DESC, statehash
LIMIT $1;
"""

_SELECT_FROM_HEIGHT = """
SELECT statehash, previousstatehash, height, canonical
FROM blocks
WHERE height >= $1
ORDER BY height DESC, statehash;
"""

_SELECT_ORPHANS_BELOW = """
SELECT statehash, previousstatehash, height, canonical
FROM blocks
WHERE NOT canonical AND height < $1
ORDER BY height
LIMIT $2;
"""

_INSERT_DAEMON_STATUS = """
INSERT INTO daemonstatus (
    ts, blockchainlength, commitid, epochduration, slotduration, slotsperepoch,
    consensusmechanism, highestblocklengthreceived, ledgermerkleroot, numaccounts,
    peers, peerscount, statehash, syncstatus, uptime
) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
ON CONFLICT DO NOTHING;
"""


def _summary(row: dict[str, Any]) -> BlockSummary:
    return BlockSummary(
        state_hash=row["statehash"],
        previous_state_hash=row["previousstatehash"],
        height=int(row["height"]),
        canonical=bool(row["canonical"]),
    )


class PostgresLedgerStore:
    """LedgerStore backed by the explorer's PostgreSQL database."""

    def __init__(self, db: Database):
        self.db = db

    async def block_exists(self, state_hash: str) -> bool:
        found = await self.db.fetch_val("SELECT 1 FROM blocks WHERE statehash = $1;", state_hash)
        return found is not None

    async def save_block(self, block: Block) -> None:
        async with self.db.transaction() as conn:
            await conn.execute(
                _INSERT_BLOCK,
                block.state_hash,
                block.previous_state_hash,
                block.snarked_ledger_hash,
                block.staged_ledger_hash,
                block.coinbase,
                block.creator,
                block.slot,
                block.height,
                block.epoch,
                block.timestamp,
                block.total_currency,
                block.user_jobs_count,
                block.snark_jobs_count,
                block.fee_transfers_count,
            )
            if block.snark_jobs:
                await conn.executemany(
                    _INSERT_SNARK_JOB,
                    [(sj.block_state_hash, sj.index, sj.job_ids, sj.prover, sj.fee) for sj in block.snark_jobs],
                )
            if block.fee_transfers:
                await conn.executemany(
                    _INSERT_FEE_TRANSFER,
                    [(ft.block_state_hash, ft.index, ft.recipient, ft.fee) for ft in block.fee_transfers],
                )
            if block.user_jobs:
                await conn.executemany(
                    _INSERT_USER_JOB,
                    [
                        (
                            uj.block_state_hash,
                            uj.index,
                            uj.id,
                            uj.sender,
                            uj.recipient,
                            uj.memo,
                            uj.fee,
                            uj.amount,
                            uj.nonce,
                            uj.delegation,
                        )
                        for uj in block.user_jobs
                    ],
                )
        logger.debug(
            "Block rows saved",
            extra={
                "event": "store.block_saved",
                "state_hash": block.state_hash,
                "txs": block.user_jobs_count,
                "snarks": block.snark_jobs_count,
                "fee_transfers": block.fee_transfers_count,
            },
        )

    async def save_account(self, account: Account) -> None:
        await self.db.execute(
            _UPSERT_ACCOUNT,
            account.public_key,
            account.balance,
            account.nonce,
            account.receipt_chain_hash,
            account.delegate,
            account.voting_for,
            account.first_seen,
            account.last_seen,
        )

    async def recent_block_hashes(self, lookback: int) -> list[BlockSummary]:
        rows = await self.db.fetch_all(_SELECT_RECENT, lookback)
        return [_summary(row) for row in rows]

    async def blocks_from_height(self, height: int) -> list[BlockSummary]:
        rows = await self.db.fetch_all(_SELECT_FROM_HEIGHT, height)
        return [_summary(row) for row in rows]

    async def get_block(self, state_hash: str) -> Block | None:
        row = await self.db.fetch_one("SELECT * FROM blocks WHERE statehash = $1;", state_hash)
        if row is None:
            return None

        block = Block(
            state_hash=row["statehash"],
            previous_state_hash=row["previousstatehash"],
            height=int(row["height"]),
            slot=int(row["slot"]),
            epoch=int(row["epoch"]),
            creator=row["creator"],
            timestamp=row["ts"],
            coinbase=int(row["coinbase"]),
            total_currency=int(row["totalcurrency"]),
            snarked_ledger_hash=row["snarkedledgerhash"],
            staged_ledger_hash=row["stagedledgerhash"],
            canonical=bool(row["canonical"]),
        )

        if row["snarkjobscount"]:
            for r in await self.db.fetch_all(
                "SELECT * FROM snarkjobs WHERE blockstatehash = $1 ORDER BY index;", state_hash
            ):
                block.snark_jobs.append(
                    SnarkJob(
                        block_state_hash=state_hash,
                        index=r["index"],
                        prover=r["prover"],
                        fee=int(r["fee"]),
                        job_ids=list(r["jobids"] or []),
                    )
                )
        if row["feetransfercount"]:
            for r in await self.db.fetch_all(
                "SELECT * FROM feetransfers WHERE blockstatehash = $1 ORDER BY index;", state_hash
            ):
                block.fee_transfers.append(
                    FeeTransfer(block_state_hash=state_hash, index=r["index"], recipient=r["recipient"], fee=int(r["fee"]))
                )
        if row["usercommandscount"]:
            for r in await self.db.fetch_all(
                "SELECT * FROM userjobs WHERE blockstatehash = $1 ORDER BY index;", state_hash
            ):
                block.user_jobs.append(
                    UserJob(
                        block_state_hash=state_hash,
                        index=r["index"],
                        id=r["id"],
                        sender=r["sender"],
                        recipient=r["recipient"],
                        memo=r["memo"],
                        fee=int(r["fee"]),
                        amount=int(r["amount"]),
                        nonce=int(r["nonce"]),
                        delegation=bool(r["delegation"]),
                    )
                )
        return block

    async def mark_canonical(self, block: Block) -> bool:
        return await self._set_canonical(block, True)

    async def mark_orphaned(self, block: Block) -> bool:
        return await self._set_canonical(block, False)

    async def _set_canonical(self, block: Block, canonical: bool) -> bool:
        async with self.db.transaction() as conn:
            current = await conn.fetchval(_SELECT_CANONICAL_FOR_UPDATE, block.state_hash)
            if current is None:
                raise ChainInconsistencyError(
                    f"block {block.state_hash} is not stored",
                    details={"state_hash": block.state_hash, "height": block.height},
                )
            if current == canonical:
                return False
            await conn.execute(_UPDATE_CANONICAL, block.state_hash, canonical)
            await self._adjust_counters(conn, block.counter_deltas(1 if canonical else -1))
        return True

    async def _adjust_counters(self, conn: asyncpg.Connection, deltas: dict[str, CounterDelta]) -> None:
        # sorted so concurrent transactions lock account rows in the same order
        args = [
            (public_key, d.tx_sent, d.tx_received, d.blocks_proposed, d.snark_jobs)
            for public_key, d in sorted(deltas.items())
        ]
        if args:
            await conn.executemany(_ADJUST_COUNTERS, args)

    async def rollback_block(self, block: Block) -> bool:
        async with self.db.transaction() as conn:
            current = await conn.fetchval(_SELECT_CANONICAL_FOR_UPDATE, block.state_hash)
            if current is None:
                return False
            if current:
                await conn.execute(_UPDATE_CANONICAL, block.state_hash, False)
                await self._adjust_counters(conn, block.counter_deltas(-1))
            await conn.execute("DELETE FROM snarkjobs WHERE blockstatehash = $1;", block.state_hash)
            await conn.execute("DELETE FROM feetransfers WHERE blockstatehash = $1;", block.state_hash)
            await conn.execute("DELETE FROM userjobs WHERE blockstatehash = $1;", block.state_hash)
            await conn.execute("DELETE FROM blocks WHERE statehash = $1;", block.state_hash)
        return True

    async def highest_block_height(self) -> int | None:
        height = await self.db.fetch_val("SELECT MAX(height) FROM blocks;")
        return int(height) if height is not None else None

    async def orphaned_blocks_below(self, height: int, limit: int = 100) -> list[BlockSummary]:
        rows = await self.db.fetch_all(_SELECT_ORPHANS_BELOW, height, limit)
        return [_summary(row) for row in rows]

    async def save_daemon_status(self, status: DaemonStatus) -> None:
        await self.db.execute(
            _INSERT_DAEMON_STATUS,
            status.timestamp,
            status.blockchain_length,
            status.commit_id,
            status.epoch_duration,
            status.slot_duration,
            status.slots_per_epoch,
            status.consensus_mechanism,
            status.highest_block_length_received,
            status.ledger_merkle_root,
            status.num_accounts,
            status.peers,
            status.peers_count,
            status.state_hash,
            status.sync_status,
            status.uptime_secs,
        )


__all__ = ["LedgerStore", "PostgresLedgerStore"]
