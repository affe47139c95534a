"""Coda node RPC client."""

from coda_explorer.rpc.client import CodaClient, NodeClient

__all__ = ["CodaClient", "NodeClient"]
