"""
Data model for the mirrored chain.

These dataclasses are the only shapes the exporter, reconciler and store
exchange; node-specific GraphQL payloads are converted in ``rpc.parsing``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class UserJob:
    """A user command (payment or delegation) included in a block."""

    block_state_hash: str
    index: int
    id: str
    sender: str
    recipient: str
    memo: str = ""
    fee: int = 0
    amount: int = 0
    nonce: int = 0
    delegation: bool = False


@dataclass
class SnarkJob:
    """A completed snark work bundle bought by the block producer."""

    block_state_hash: str
    index: int
    prover: str
    fee: int = 0
    job_ids: list[int] = field(default_factory=list)


@dataclass
class FeeTransfer:
    """A fee transfer paid out by a block."""

    block_state_hash: str
    index: int
    recipient: str
    fee: int = 0


@dataclass
class CounterDelta:
    """Signed adjustment of the derived counters of one account."""

    tx_sent: int = 0
    tx_received: int = 0
    blocks_proposed: int = 0
    snark_jobs: int = 0

    def is_zero(self) -> bool:
        return not (self.tx_sent or self.tx_received or self.blocks_proposed or self.snark_jobs)


@dataclass
class BlockSummary:
    """Hash linkage and canonical flag of a stored block."""

    state_hash: str
    previous_state_hash: str
    height: int
    canonical: bool = False


@dataclass
class Block:
    """
    A block together with its child collections.

    Attributes:
        state_hash: Content hash identifying the block
        previous_state_hash: State hash of the parent block
        height: Blockchain length at this block
        canonical: Whether the block is on the node's current best chain
        timestamp: Block creation time (UTC)
    """

    state_hash: str
    previous_state_hash: str
    height: int
    slot: int
    epoch: int
    creator: str
    timestamp: datetime
    coinbase: int = 0
    total_currency: int = 0
    snarked_ledger_hash: str = ""
    staged_ledger_hash: str = ""
    canonical: bool = False
    user_jobs: list[UserJob] = field(default_factory=list)
    snark_jobs: list[SnarkJob] = field(default_factory=list)
    fee_transfers: list[FeeTransfer] = field(default_factory=list)

    @property
    def user_jobs_count(self) -> int:
        return len(self.user_jobs)

    @property
    def snark_jobs_count(self) -> int:
        return len(self.snark_jobs)

    @property
    def fee_transfers_count(self) -> int:
        return len(self.fee_transfers)

    def summary(self) -> BlockSummary:
        return BlockSummary(
            state_hash=self.state_hash,
            previous_state_hash=self.previous_state_hash,
            height=self.height,
            canonical=self.canonical,
        )

    def touched_accounts(self) -> set[str]:
        """Public keys referenced by this block as creator, sender, recipient or prover."""
        accounts = {self.creator}
        for job in self.user_jobs:
            accounts.add(job.sender)
            accounts.add(job.recipient)
        for transfer in self.fee_transfers:
            accounts.add(transfer.recipient)
        for snark in self.snark_jobs:
            accounts.add(snark.prover)
        accounts.discard("")
        return accounts

    def counter_deltas(self, sign: int = 1) -> dict[str, CounterDelta]:
        """
        Per-account counter contribution of this block while canonical.

        Args:
            sign: +1 when the block becomes canonical, -1 when it stops being canonical

        Returns:
            Mapping of public key to the counter adjustment to apply
        """
        if sign not in (1, -1):
            raise ValueError(f"sign must be 1 or -1, got {sign}")

        deltas: dict[str, CounterDelta] = {}

        def _delta(public_key: str) -> CounterDelta:
            if public_key not in deltas:
                deltas[public_key] = CounterDelta()
            return deltas[public_key]

        _delta(self.creator).blocks_proposed += sign
        for snark in self.snark_jobs:
            _delta(snark.prover).snark_jobs += sign
        for job in self.user_jobs:
            _delta(job.sender).tx_sent += sign
            _delta(job.recipient).tx_received += sign

        return {key: delta for key, delta in deltas.items() if key and not delta.is_zero()}


@dataclass
class Account:
    """On-chain account state plus derived explorer counters."""

    public_key: str
    balance: int = 0
    nonce: int = 0
    receipt_chain_hash: str = ""
    delegate: str = ""
    voting_for: str = ""
    tx_sent: int = 0
    tx_received: int = 0
    blocks_proposed: int = 0
    snark_jobs: int = 0
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    def apply(self, delta: CounterDelta) -> None:
        self.tx_sent += delta.tx_sent
        self.tx_received += delta.tx_received
        self.blocks_proposed += delta.blocks_proposed
        self.snark_jobs += delta.snark_jobs


@dataclass
class DaemonStatus:
    """Point-in-time snapshot of the node's daemon status."""

    timestamp: datetime
    blockchain_length: int = 0
    commit_id: str = ""
    epoch_duration: int = 0
    slot_duration: int = 0
    slots_per_epoch: int = 0
    consensus_mechanism: str = ""
    highest_block_length_received: int = 0
    ledger_merkle_root: str = ""
    num_accounts: int = 0
    peers: list[str] = field(default_factory=list)
    state_hash: str = ""
    sync_status: str = ""
    uptime_secs: int = 0

    @property
    def peers_count(self) -> int:
        return len(self.peers)
