"""
Coda Explorer Indexer

Mirrors a Coda node's chain into PostgreSQL and keeps the canonical chain
and per-account counters in step with the node's best chain.

Main Components:
- rpc: GraphQL client and new-block subscription
- database: Connection pool, schema and ledger store
- services: Block exporter, reconciler and scheduler
"""

__version__ = "0.1.0"
__author__ = "Coda Explorer Development Team"

__all__ = []
