"""
Async SQLite database wrapper for fieldsync.

This module provides a thin wrapper around aiosqlite. A single connection
is shared and every statement runs under one asyncio lock, so each
statement is atomic with respect to other coroutines in the process.
"""

import asyncio
from pathlib import Path
from typing import Optional, List

import aiosqlite

from ..utils.errors import StorageUnavailable, error_context
from ..utils.logging import get_logger


logger = get_logger("fieldsync.storage.database")


class Database:
    """Async SQLite database wrapper."""

    def __init__(
        self,
        db_path: Path | str,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
    ):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database file (":memory:" is accepted)
            journal_mode: SQLite journal mode
            synchronous: SQLite synchronous pragma
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection."""
        if self._connection is not None:
            return

        with error_context("database", "connect", path=str(self.db_path)):
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(
                self.db_path,
                isolation_level=None  # Autocommit mode
            )
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute(f"PRAGMA journal_mode={self.journal_mode}")
            await self._connection.execute(f"PRAGMA synchronous={self.synchronous}")

        logger.debug("database_connected", path=str(self.db_path))

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.debug("database_closed", path=str(self.db_path))

    async def _ensure_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        if self._connection is None:
            raise StorageUnavailable("Database connection is not open")
        return self._connection

    async def execute(self, sql: str, parameters: tuple = ()) -> int:
        """
        Execute SQL statement.

        Args:
            sql: SQL statement
            parameters: Query parameters

        Returns:
            Number of rows changed
        """
        async with self._lock:
            connection = await self._ensure_connection()
            with error_context("database", "execute", sql=sql.split()[0]):
                cursor = await connection.execute(sql, parameters)
                rowcount = cursor.rowcount
                await cursor.close()
                return rowcount

    async def executescript(self, script: str) -> None:
        """Execute a multi-statement script (schema creation)."""
        async with self._lock:
            connection = await self._ensure_connection()
            with error_context("database", "executescript"):
                await connection.executescript(script)

    async def fetchone(self, sql: str, parameters: tuple = ()) -> Optional[aiosqlite.Row]:
        """
        Execute query and fetch one result.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            Single row or None
        """
        async with self._lock:
            connection = await self._ensure_connection()
            with error_context("database", "fetchone"):
                async with connection.execute(sql, parameters) as cursor:
                    return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: tuple = ()) -> List[aiosqlite.Row]:
        """
        Execute query and fetch all results.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            List of rows
        """
        async with self._lock:
            connection = await self._ensure_connection()
            with error_context("database", "fetchall"):
                async with connection.execute(sql, parameters) as cursor:
                    return list(await cursor.fetchall())

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
