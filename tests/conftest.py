"""
Test configuration and fixtures
"""
import sys
import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root and src to Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"

sys.path.insert(0, str(project_root))
sys.path.insert(0, str(src_path))

import pytest

from coda_explorer.exceptions import ChainInconsistencyError, NodeResponseError, NodeTransportError
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
from coda_explorer.services.exporter import BlockExporter
from coda_explorer.services.reconciler import Reconciler

GENESIS_TIME = datetime(2020, 3, 1, tzinfo=timezone.utc)


def make_block(
    state_hash,
    previous_state_hash,
    height,
    creator=None,
    payments=(),
    provers=(),
    fee_recipients=(),
):
    """Build a block whose children reference the given accounts.

    ``payments`` is a sequence of ``(sender, recipient)`` pairs.
    """
    block = Block(
        state_hash=state_hash,
        previous_state_hash=previous_state_hash,
        height=height,
        slot=height * 2,
        epoch=0,
        creator=creator or f"B62q_{state_hash}",
        timestamp=GENESIS_TIME + timedelta(minutes=3 * height),
        coinbase=20_000_000_000,
        total_currency=1_000_000_000_000,
    )
    for index, (sender, recipient) in enumerate(payments):
        block.user_jobs.append(
            UserJob(
                block_state_hash=state_hash,
                index=index,
                id=f"tx-{state_hash}-{index}",
                sender=sender,
                recipient=recipient,
                fee=10,
                amount=1000,
                nonce=index,
            )
        )
    for index, prover in enumerate(provers):
        block.snark_jobs.append(SnarkJob(block_state_hash=state_hash, index=index, prover=prover, fee=5, job_ids=[index]))
    for index, recipient in enumerate(fee_recipients):
        block.fee_transfers.append(FeeTransfer(block_state_hash=state_hash, index=index, recipient=recipient, fee=15))
    return block


class InMemoryLedgerStore:
    """LedgerStore double with the same write semantics as the Postgres store."""

    def __init__(self):
        self.blocks: dict[str, Block] = {}
        self.accounts: dict[str, Account] = {}
        self.statuses: list[DaemonStatus] = []
        self.writes = 0
        self.fail_on_save_block = None

    async def block_exists(self, state_hash):
        return state_hash in self.blocks

    async def save_block(self, block):
        if self.fail_on_save_block is not None:
            raise self.fail_on_save_block
        if block.state_hash in self.blocks:
            return
        stored = copy.deepcopy(block)
        stored.canonical = False
        self.blocks[block.state_hash] = stored
        self.writes += 1

    async def save_account(self, account):
        existing = self.accounts.get(account.public_key)
        if existing is None:
            stored = copy.deepcopy(account)
            stored.tx_sent = stored.tx_received = stored.blocks_proposed = stored.snark_jobs = 0
            self.accounts[account.public_key] = stored
        else:
            existing.balance = account.balance
            existing.nonce = account.nonce
            existing.receipt_chain_hash = account.receipt_chain_hash
            existing.delegate = account.delegate
            existing.voting_for = account.voting_for
            existing.first_seen = min(existing.first_seen, account.first_seen)
            existing.last_seen = max(existing.last_seen, account.last_seen)
        self.writes += 1

    async def recent_block_hashes(self, lookback):
        ordered = sorted(self.blocks.values(), key=lambda b: (-b.height, b.state_hash))
        return [b.summary() for b in ordered[:lookback]]

    async def blocks_from_height(self, height):
        ordered = sorted(self.blocks.values(), key=lambda b: (-b.height, b.state_hash))
        return [b.summary() for b in ordered if b.height >= height]

    async def get_block(self, state_hash):
        block = self.blocks.get(state_hash)
        return copy.deepcopy(block) if block else None

    async def mark_canonical(self, block):
        return self._set_canonical(block, True)

    async def mark_orphaned(self, block):
        return self._set_canonical(block, False)

    def _set_canonical(self, block, canonical):
        stored = self.blocks.get(block.state_hash)
        if stored is None:
            raise ChainInconsistencyError(f"block {block.state_hash} is not stored")
        if stored.canonical == canonical:
            return False
        stored.canonical = canonical
        self._apply(stored.counter_deltas(1 if canonical else -1))
        self.writes += 1
        return True

    def _apply(self, deltas):
        for public_key, delta in deltas.items():
            if public_key in self.accounts:
                self.accounts[public_key].apply(delta)

    async def rollback_block(self, block):
        stored = self.blocks.get(block.state_hash)
        if stored is None:
            return False
        if stored.canonical:
            self._apply(stored.counter_deltas(-1))
        del self.blocks[block.state_hash]
        self.writes += 1
        return True

    async def highest_block_height(self):
        if not self.blocks:
            return None
        return max(b.height for b in self.blocks.values())

    async def orphaned_blocks_below(self, height, limit=100):
        orphans = sorted(
            (b for b in self.blocks.values() if not b.canonical and b.height < height),
            key=lambda b: b.height,
        )
        return [b.summary() for b in orphans[:limit]]

    async def save_daemon_status(self, status):
        self.statuses.append(status)
        self.writes += 1

    # helpers for assertions
    def canonical_hashes(self):
        return {h for h, b in self.blocks.items() if b.canonical}

    def counters(self, public_key):
        account = self.accounts[public_key]
        return CounterDelta(account.tx_sent, account.tx_received, account.blocks_proposed, account.snark_jobs)


class FakeNodeClient:
    """Node double serving a configurable best chain."""

    def __init__(self):
        self.known: dict[str, Block] = {}
        self.best_chain: list[str] = []
        self.unknown_accounts: set[str] = set()
        self.transport_down = False
        self.notifications: list[str] = []
        self.status = DaemonStatus(timestamp=GENESIS_TIME, blockchain_length=0, sync_status="SYNCED")
        self.fetch_block_calls: list[str] = []
        self.fetch_account_calls: list[str] = []
        self.descending = False

    def set_chain(self, *blocks):
        """Make ``blocks`` (ascending) the node's best chain."""
        for block in blocks:
            self.known[block.state_hash] = block
        self.best_chain = [b.state_hash for b in blocks]

    def _check_transport(self):
        if self.transport_down:
            raise NodeTransportError("connection refused")

    async def fetch_recent_blocks(self, lookback):
        self._check_transport()
        blocks = [copy.deepcopy(self.known[h]) for h in self.best_chain[-lookback:]]
        return blocks[::-1] if self.descending else blocks

    async def fetch_block(self, state_hash):
        self._check_transport()
        self.fetch_block_calls.append(state_hash)
        if state_hash not in self.known:
            raise NodeResponseError(f"node does not know block {state_hash}")
        return copy.deepcopy(self.known[state_hash])

    async def fetch_account(self, public_key):
        self._check_transport()
        self.fetch_account_calls.append(public_key)
        if public_key in self.unknown_accounts:
            raise NodeResponseError(f"node does not know account {public_key}")
        return Account(public_key=public_key, balance=1_000_000, nonce=1)

    async def fetch_daemon_status(self):
        self._check_transport()
        return self.status

    async def watch_new_blocks(self, queue):
        for state_hash in self.notifications:
            queue.put_nowait(state_hash)


def expected_counters(store):
    """Sum the counter contributions of every canonical block."""
    totals: dict[str, CounterDelta] = {}
    for block in store.blocks.values():
        if not block.canonical:
            continue
        for public_key, delta in block.counter_deltas(1).items():
            total = totals.setdefault(public_key, CounterDelta())
            total.tx_sent += delta.tx_sent
            total.tx_received += delta.tx_received
            total.blocks_proposed += delta.blocks_proposed
            total.snark_jobs += delta.snark_jobs
    return totals


def assert_counters_conserved(store):
    totals = expected_counters(store)
    for public_key in store.accounts:
        assert store.counters(public_key) == totals.get(public_key, CounterDelta()), public_key


def assert_canonical_chain_linked(store):
    canonical = {h: b for h, b in store.blocks.items() if b.canonical}
    lowest = min((b.height for b in canonical.values()), default=None)
    for block in canonical.values():
        if block.height == lowest:
            continue
        parent = canonical.get(block.previous_state_hash)
        assert parent is not None, f"{block.state_hash} has no canonical parent"
        assert parent.height == block.height - 1


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def node():
    return FakeNodeClient()


@pytest.fixture
def exporter(store, node):
    return BlockExporter(store, node)


@pytest.fixture
def reconciler(store, node, exporter):
    return Reconciler(store, node, exporter)
