"""
Coda node client - GraphQL queries over HTTP and new-block subscription over websocket
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

import httpx
import websockets

from coda_explorer.exceptions import NodeResponseError, NodeTransportError
from coda_explorer.models import Account, Block, DaemonStatus
from coda_explorer.rpc import parsing

logger = logging.getLogger(__name__)

_CONFIRMING_FRAMES = ("connection_ack", "data")


@runtime_checkable
class NodeClient(Protocol):
    """What the indexer needs from an upstream node."""

    async def fetch_recent_blocks(self, lookback: int) -> list[Block]:
        """Return the last ``lookback`` blocks, ascending by height."""
        ...

    async def fetch_block(self, state_hash: str) -> Block:
        """Return one block with all child collections."""
        ...

    async def fetch_account(self, public_key: str) -> Account:
        """Return current on-chain state of an account (counters zero)."""
        ...

    async def fetch_daemon_status(self) -> DaemonStatus:
        """Return a daemon status snapshot."""
        ...

    async def watch_new_blocks(self, queue: asyncio.Queue) -> None:
        """Push state hashes of new blocks into ``queue`` until cancelled."""
        ...


class CodaClient:
    """
    Talks to a Coda daemon's GraphQL endpoint.

    Queries go through a shared ``httpx.AsyncClient`` with connect and read
    timeouts; the ``newBlock`` subscription runs over ``graphql-ws`` and
    reconnects with bounded exponential backoff.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        connect_timeout: float = 5.0,
        ws_backoff_initial: float = 1.0,
        ws_backoff_max: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if "://" not in endpoint:
            endpoint = f"http://{endpoint}"
        parsed = urlparse(endpoint)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("endpoint must include host, e.g. localhost:3085/graphql")

        path = parsed.path or "/graphql"
        self._http_url = f"{parsed.scheme}://{parsed.netloc}{path}"
        ws_scheme = "wss" if parsed.scheme == "https" else "ws"
        self._ws_url = f"{ws_scheme}://{parsed.netloc}{path}"

        self.ws_backoff_initial = ws_backoff_initial
        self.ws_backoff_max = ws_backoff_max
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    @property
    def http_url(self) -> str:
        return self._http_url

    @property
    def ws_url(self) -> str:
        return self._ws_url

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------ queries
    async def fetch_recent_blocks(self, lookback: int) -> list[Block]:
        data = await self._query(parsing.RECENT_BLOCKS_QUERY, {"last": lookback})
        return parsing.parse_recent_blocks(data)

    async def fetch_block(self, state_hash: str) -> Block:
        data = await self._query(parsing.BLOCK_QUERY, {"stateHash": state_hash})
        node = data.get("block")
        if not node:
            raise NodeResponseError(
                f"node does not know block {state_hash}",
                details={"state_hash": state_hash},
            )
        return parsing.parse_block(node)

    async def fetch_account(self, public_key: str) -> Account:
        data = await self._query(parsing.ACCOUNT_QUERY, {"publicKey": public_key})
        return parsing.parse_account(public_key, data)

    async def fetch_daemon_status(self) -> DaemonStatus:
        data = await self._query(parsing.DAEMON_STATUS_QUERY)
        return parsing.parse_daemon_status(data)

    async def _query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST a GraphQL query and return its ``data`` member."""
        try:
            response = await self._http.post(
                self._http_url,
                json={"query": query, "variables": variables or {}},
            )
        except httpx.TimeoutException as exc:
            raise NodeTransportError(
                f"timeout querying node at {self._http_url}",
                details={"url": self._http_url},
            ) from exc
        except httpx.HTTPError as exc:
            raise NodeTransportError(
                f"error querying node at {self._http_url}: {exc}",
                details={"url": self._http_url},
            ) from exc

        if response.status_code != 200:
            raise NodeTransportError(
                f"node answered HTTP {response.status_code}",
                details={"url": self._http_url, "status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise NodeResponseError("node answered with invalid JSON", details={"url": self._http_url}) from exc
        return parsing.parse_graphql_response(payload)

    # ------------------------------------------------------------ subscription
    async def watch_new_blocks(self, queue: asyncio.Queue) -> None:
        """
        Stream new block state hashes into ``queue``, reconnecting forever.

        Runs until cancelled. A full queue drops the hash: anything already
        queued triggers a full reconciliation pass which will see it anyway.
        """
        delay = self.ws_backoff_initial
        while True:
            try:
                async with websockets.connect(
                    self._ws_url,
                    subprotocols=["graphql-ws"],
                    ping_interval=20,
                    ping_timeout=20,
                    max_size=2 ** 20,
                ) as ws:
                    await ws.send(json.dumps({"type": "connection_init", "payload": {}}))
                    await ws.send(
                        json.dumps(
                            {
                                "id": "1",
                                "type": "start",
                                "payload": {"query": parsing.NEW_BLOCK_SUBSCRIPTION, "variables": {}},
                            }
                        )
                    )
                    logger.info(
                        "Subscribed to newBlock events",
                        extra={"event": "node.subscribed", "url": self._ws_url},
                    )
                    confirmed = False
                    async for message in ws:
                        if not confirmed and parsing.subscription_frame_type(message) in _CONFIRMING_FRAMES:
                            # the node answered, so the next failure starts a fresh backoff
                            confirmed = True
                            delay = self.ws_backoff_initial
                        self._handle_message(message, queue)
                logger.warning("newBlock subscription closed by node", extra={"event": "node.subscription_closed"})
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    f"newBlock subscription disconnected: {exc}",
                    extra={"event": "node.subscription_error", "retry_in": delay},
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.ws_backoff_max)

    def _handle_message(self, message: str | bytes, queue: asyncio.Queue) -> None:
        """Decode one subscription frame and enqueue its state hash."""
        try:
            state_hash = parsing.parse_new_block_message(message)
        except NodeResponseError as exc:
            logger.debug(f"Discarding subscription frame: {exc}")
            return
        if not state_hash:
            return
        try:
            queue.put_nowait(state_hash)
        except asyncio.QueueFull:
            logger.debug("Notification queue full, dropping %s", state_hash)
