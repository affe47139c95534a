"""
Tests for the chain data model.
"""

from datetime import datetime, timezone

import pytest

from conftest import make_block
from coda_explorer.models import Account, CounterDelta, DaemonStatus


class TestBlockModel:
    """Test derived views of a block"""

    def test_touched_accounts(self):
        block = make_block(
            "A", "genesis", 1, creator="maker", payments=[("alice", "bob")], provers=["pat"], fee_recipients=["fay"]
        )

        assert block.touched_accounts() == {"maker", "alice", "bob", "pat", "fay"}

    def test_touched_accounts_ignores_empty_keys(self):
        block = make_block("A", "genesis", 1, creator="maker", fee_recipients=[""])

        assert block.touched_accounts() == {"maker"}

    def test_counter_deltas_for_promotion(self):
        block = make_block(
            "A", "genesis", 1, creator="maker", payments=[("alice", "bob"), ("alice", "maker")], provers=["pat", "pat"]
        )

        deltas = block.counter_deltas(1)

        assert deltas["maker"] == CounterDelta(tx_received=1, blocks_proposed=1)
        assert deltas["alice"] == CounterDelta(tx_sent=2)
        assert deltas["bob"] == CounterDelta(tx_received=1)
        assert deltas["pat"] == CounterDelta(snark_jobs=2)

    def test_counter_deltas_for_demotion_mirror_promotion(self):
        block = make_block("A", "genesis", 1, creator="maker", payments=[("alice", "bob")], provers=["pat"])

        up = block.counter_deltas(1)
        down = block.counter_deltas(-1)

        assert set(up) == set(down)
        for key in up:
            assert down[key] == CounterDelta(
                -up[key].tx_sent, -up[key].tx_received, -up[key].blocks_proposed, -up[key].snark_jobs
            )

    def test_fee_transfers_carry_no_counter(self):
        block = make_block("A", "genesis", 1, creator="maker", fee_recipients=["fay"])

        assert "fay" not in block.counter_deltas(1)

    def test_self_payment_counts_both_ways(self):
        block = make_block("A", "genesis", 1, creator="maker", payments=[("alice", "alice")])

        assert block.counter_deltas(1)["alice"] == CounterDelta(tx_sent=1, tx_received=1)

    def test_invalid_sign(self):
        with pytest.raises(ValueError):
            make_block("A", "genesis", 1).counter_deltas(0)

    def test_counts_and_summary(self):
        block = make_block("A", "genesis", 7, payments=[("a", "b")], provers=["p", "q"])
        block.canonical = True

        assert (block.user_jobs_count, block.snark_jobs_count, block.fee_transfers_count) == (1, 2, 0)
        summary = block.summary()
        assert (summary.state_hash, summary.previous_state_hash, summary.height, summary.canonical) == (
            "A",
            "genesis",
            7,
            True,
        )


class TestAccountModel:
    def test_apply_delta(self):
        account = Account(public_key="alice", tx_sent=2)

        account.apply(CounterDelta(tx_sent=-1, blocks_proposed=1))

        assert (account.tx_sent, account.blocks_proposed) == (1, 1)

    def test_zero_delta(self):
        assert CounterDelta().is_zero()
        assert not CounterDelta(snark_jobs=-1).is_zero()


def test_daemon_status_peer_count():
    status = DaemonStatus(timestamp=datetime.now(timezone.utc), peers=["a", "b", "c"])
    assert status.peers_count == 3
