from __future__ import annotations

"""
Database connection management for the Coda explorer indexer
"""
import asyncpg
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator
import logging

from coda_explorer.database.schema import MIGRATIONS
from coda_explorer.exceptions import DatabaseError, InitializationError

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class Database:
    """Async PostgreSQL database connection manager"""

    def __init__(self, database_url: str, min_size: int = 2, max_size: int = 10, command_timeout: float = 60):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: asyncpg.Pool | None = None

    async def connect(self):
        """Establish database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                self.database_url,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
            logger.info("Database connection pool created")
        except _DRIVER_ERRORS as e:
            logger.error(f"Failed to connect to database: {e}")
            raise InitializationError(f"database unreachable: {e}") from e

    async def disconnect(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def is_connected(self) -> bool:
        """Check if database is connected"""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except _DRIVER_ERRORS:
            return False

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise DatabaseError("database is not connected")
        return self.pool

    async def fetch_one(self, query: str, *args) -> dict[str, Any] | None:
        """Fetch single row"""
        try:
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(query, *args)
                return dict(row) if row else None
        except _DRIVER_ERRORS as e:
            raise DatabaseError(f"query failed: {e}") from e

    async def fetch_all(self, query: str, *args) -> list[dict[str, Any]]:
        """Fetch multiple rows"""
        try:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(query, *args)
                return [dict(row) for row in rows]
        except _DRIVER_ERRORS as e:
            raise DatabaseError(f"query failed: {e}") from e

    async def fetch_val(self, query: str, *args) -> Any:
        """Fetch the first column of the first row"""
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.fetchval(query, *args)
        except _DRIVER_ERRORS as e:
            raise DatabaseError(f"query failed: {e}") from e

    async def execute(self, query: str, *args) -> str:
        """Execute query without result"""
        try:
            async with self._require_pool().acquire() as conn:
                return await conn.execute(query, *args)
        except _DRIVER_ERRORS as e:
            raise DatabaseError(f"statement failed: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection inside a transaction; any error rolls it back."""
        try:
            async with self._require_pool().acquire() as conn:
                async with conn.transaction():
                    yield conn
        except _DRIVER_ERRORS as e:
            raise DatabaseError(f"transaction failed: {e}") from e

    async def run_migrations(self) -> None:
        """Create the mirror tables (idempotent)."""
        for statement in MIGRATIONS:
            await self.execute(statement)
        logger.info("Explorer migrations executed successfully")
