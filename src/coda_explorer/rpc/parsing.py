"""
Conversion of Coda GraphQL payloads into explorer models.

The node reports integers as decimal strings and dates as JavaScript
millisecond timestamps; everything here normalises those quirks so the rest
of the indexer only sees ``coda_explorer.models`` types.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from coda_explorer.exceptions import NodeResponseError
from coda_explorer.models import (
    Account,
    Block,
    DaemonStatus,
    FeeTransfer,
    SnarkJob,
    UserJob,
)

BLOCK_FIELDS = """
    stateHash
    protocolState {
      previousStateHash
      consensusState {
        blockchainLength
        epoch
        slot
        totalCurrency
      }
      blockchainState {
        snarkedLedgerHash
        stagedLedgerHash
        date
      }
    }
    transactions {
      coinbase
      feeTransfer {
        fee
        recipient
      }
      userCommands {
        amount
        fee
        from
        id
        isDelegation
        memo
        nonce
        to
      }
    }
    snarkJobs {
      fee
      prover
      workIds
    }
    creatorAccount {
      publicKey
    }
"""

RECENT_BLOCKS_QUERY = (
    "query RecentBlocks($last: Int!) { blocks(last: $last) { nodes {"
    + BLOCK_FIELDS
    + "} } }"
)

BLOCK_QUERY = "query Block($stateHash: String!) { block(stateHash: $stateHash) {" + BLOCK_FIELDS + "} }"

ACCOUNT_QUERY = """
query Account($publicKey: PublicKey!) {
  account(publicKey: $publicKey) {
    balance {
      total
    }
    nonce
    receiptChainHash
    delegateAccount {
      publicKey
    }
    votingFor
  }
}
"""

DAEMON_STATUS_QUERY = """
query DaemonStatus {
  daemonStatus {
    blockchainLength
    commitId
    consensusConfiguration {
      epochDuration
      slotDuration
      slotsPerEpoch
    }
    consensusMechanism
    highestBlockLengthReceived
    ledgerMerkleRoot
    numAccounts
    peers
    stateHash
    syncStatus
    uptimeSecs
  }
}
"""

NEW_BLOCK_SUBSCRIPTION = "subscription { newBlock { stateHash } }"


def _require(payload: Any, *path: str) -> Any:
    """Walk ``path`` through nested dicts, raising on any missing level."""
    current = payload
    for key in path:
        if not isinstance(current, dict) or current.get(key) is None:
            raise NodeResponseError(
                f"missing field {'.'.join(path)} in node response",
                details={"field": ".".join(path)},
            )
        current = current[key]
    return current


def _optional(payload: Any, *path: str, default: Any = None) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict) or current.get(key) is None:
            return default
        current = current[key]
    return current


def parse_int(value: Any, field_name: str = "value") -> int:
    """Parse an integer the node may send as a number or a decimal string."""
    if isinstance(value, bool):
        raise NodeResponseError(f"invalid integer for {field_name}: {value!r}", details={"field": field_name})
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise NodeResponseError(
            f"invalid integer for {field_name}: {value!r}",
            details={"field": field_name},
        ) from exc


def parse_js_timestamp(value: Any) -> datetime:
    """Convert a JavaScript millisecond timestamp into an aware UTC datetime."""
    millis = parse_int(value, "date")
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def parse_block(node: dict[str, Any]) -> Block:
    """Build a :class:`Block` (with child rows) from a GraphQL block node."""
    state_hash = _require(node, "stateHash")
    consensus = _require(node, "protocolState", "consensusState")
    chain_state = _require(node, "protocolState", "blockchainState")
    transactions = _optional(node, "transactions", default={})

    block = Block(
        state_hash=state_hash,
        previous_state_hash=_require(node, "protocolState", "previousStateHash"),
        height=parse_int(_require(consensus, "blockchainLength"), "blockchainLength"),
        slot=parse_int(_optional(consensus, "slot", default=0), "slot"),
        epoch=parse_int(_optional(consensus, "epoch", default=0), "epoch"),
        creator=_require(node, "creatorAccount", "publicKey"),
        timestamp=parse_js_timestamp(_require(chain_state, "date")),
        coinbase=parse_int(_optional(transactions, "coinbase", default=0), "coinbase"),
        total_currency=parse_int(_optional(consensus, "totalCurrency", default=0), "totalCurrency"),
        snarked_ledger_hash=_optional(chain_state, "snarkedLedgerHash", default=""),
        staged_ledger_hash=_optional(chain_state, "stagedLedgerHash", default=""),
    )

    for index, command in enumerate(_optional(transactions, "userCommands", default=[])):
        block.user_jobs.append(
            UserJob(
                block_state_hash=state_hash,
                index=index,
                id=_require(command, "id"),
                sender=_require(command, "from"),
                recipient=_require(command, "to"),
                memo=_optional(command, "memo", default=""),
                fee=parse_int(_optional(command, "fee", default=0), "fee"),
                amount=parse_int(_optional(command, "amount", default=0), "amount"),
                nonce=parse_int(_optional(command, "nonce", default=0), "nonce"),
                delegation=bool(_optional(command, "isDelegation", default=False)),
            )
        )

    for index, job in enumerate(_optional(node, "snarkJobs", default=[])):
        block.snark_jobs.append(
            SnarkJob(
                block_state_hash=state_hash,
                index=index,
                prover=_require(job, "prover"),
                fee=parse_int(_optional(job, "fee", default=0), "fee"),
                job_ids=[parse_int(work_id, "workIds") for work_id in _optional(job, "workIds", default=[])],
            )
        )

    for index, transfer in enumerate(_optional(transactions, "feeTransfer", default=[])):
        block.fee_transfers.append(
            FeeTransfer(
                block_state_hash=state_hash,
                index=index,
                recipient=_require(transfer, "recipient"),
                fee=parse_int(_optional(transfer, "fee", default=0), "fee"),
            )
        )

    return block


def parse_recent_blocks(data: dict[str, Any]) -> list[Block]:
    """Parse a ``blocks(last: n)`` response, sorted by ascending height."""
    nodes = _optional(data, "blocks", "nodes", default=[])
    if not isinstance(nodes, list):
        raise NodeResponseError("blocks.nodes is not a list")
    blocks = [parse_block(node) for node in nodes]
    blocks.sort(key=lambda b: b.height)
    return blocks


def parse_account(public_key: str, data: dict[str, Any]) -> Account:
    """Parse an ``account`` response; explorer counters start at zero."""
    account = _optional(data, "account")
    if account is None:
        raise NodeResponseError(
            f"node does not know account {public_key}",
            details={"public_key": public_key},
        )
    return Account(
        public_key=public_key,
        balance=parse_int(_require(account, "balance", "total"), "balance"),
        nonce=parse_int(_optional(account, "nonce", default=0), "nonce"),
        receipt_chain_hash=_optional(account, "receiptChainHash", default=""),
        delegate=_optional(account, "delegateAccount", "publicKey", default=""),
        voting_for=_optional(account, "votingFor", default=""),
    )


def parse_daemon_status(data: dict[str, Any], now: datetime | None = None) -> DaemonStatus:
    """Parse a ``daemonStatus`` response into a timestamped snapshot."""
    status = _require(data, "daemonStatus")
    consensus = _optional(status, "consensusConfiguration", default={})
    return DaemonStatus(
        timestamp=now or datetime.now(timezone.utc),
        blockchain_length=parse_int(_optional(status, "blockchainLength", default=0), "blockchainLength"),
        commit_id=_optional(status, "commitId", default=""),
        epoch_duration=parse_int(_optional(consensus, "epochDuration", default=0), "epochDuration"),
        slot_duration=parse_int(_optional(consensus, "slotDuration", default=0), "slotDuration"),
        slots_per_epoch=parse_int(_optional(consensus, "slotsPerEpoch", default=0), "slotsPerEpoch"),
        consensus_mechanism=_optional(status, "consensusMechanism", default=""),
        highest_block_length_received=parse_int(
            _optional(status, "highestBlockLengthReceived", default=0), "highestBlockLengthReceived"
        ),
        ledger_merkle_root=_optional(status, "ledgerMerkleRoot", default=""),
        num_accounts=parse_int(_optional(status, "numAccounts", default=0), "numAccounts"),
        peers=list(_optional(status, "peers", default=[])),
        state_hash=_optional(status, "stateHash", default=""),
        sync_status=_optional(status, "syncStatus", default=""),
        uptime_secs=parse_int(_optional(status, "uptimeSecs", default=0), "uptimeSecs"),
    )


def parse_graphql_response(payload: Any) -> dict[str, Any]:
    """Return the ``data`` member of a GraphQL response or raise on ``errors``."""
    if not isinstance(payload, dict):
        raise NodeResponseError("GraphQL response is not an object")
    errors = payload.get("errors")
    if errors:
        messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
        raise NodeResponseError(
            f"node returned GraphQL errors: {'; '.join(messages)}",
            details={"errors": messages},
        )
    data = payload.get("data")
    if not isinstance(data, dict):
        raise NodeResponseError("GraphQL response has no data member")
    return data


def parse_new_block_message(message: str | bytes) -> str | None:
    """
    Extract the state hash from a ``graphql-ws`` subscription frame.

    Returns None for protocol frames that carry no block (ack, keep-alive,
    complete). Raises NodeResponseError for undecodable frames.
    """
    try:
        frame = json.loads(message)
    except (TypeError, ValueError) as exc:
        raise NodeResponseError("undecodable subscription frame") from exc
    if not isinstance(frame, dict):
        raise NodeResponseError("subscription frame is not an object")

    frame_type = frame.get("type")
    if frame_type == "error":
        raise NodeResponseError("subscription error frame", details={"payload": frame.get("payload")})
    if frame_type != "data":
        return None

    payload = frame.get("payload") or {}
    if payload.get("errors"):
        raise NodeResponseError("subscription payload contains errors", details={"errors": payload["errors"]})
    return _optional(payload, "data", "newBlock", "stateHash")


def subscription_frame_type(message: str | bytes) -> str | None:
    """Return the ``type`` of a ``graphql-ws`` frame, or None if it cannot be decoded."""
    try:
        frame = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None
    return frame.get("type")
