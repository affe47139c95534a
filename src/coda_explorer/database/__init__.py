from coda_explorer.database.connection import Database
from coda_explorer.database.ledger_store import LedgerStore, PostgresLedgerStore

__all__ = ["Database", "LedgerStore", "PostgresLedgerStore"]
