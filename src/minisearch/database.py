"""
Database abstraction layer for supporting both SQLite and PostgreSQL backends.

Queries are written once with PostgreSQL-style ``$n`` placeholders; the SQLite
wrapper rewrites them to numbered ``?n`` parameters. Driver errors surface as
:class:`PersistenceError`.
"""

from __future__ import annotations
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional, Tuple, List, Any

import aiosqlite
import asyncpg

from .config import DatabaseConfig
from .errors import PersistenceError

_PLACEHOLDER = re.compile(r"\$(\d+)")

DRIVER_ERRORS = (sqlite3.Error, asyncpg.PostgresError, asyncpg.InterfaceError)


def to_sqlite_placeholders(query: str) -> str:
    """Rewrite ``$1`` style placeholders to SQLite's numbered ``?1`` form."""
    return _PLACEHOLDER.sub(r"?\1", query)


def _persistence_error(exc: Exception, query: str) -> PersistenceError:
    statement = " ".join(query.split())[:80]
    return PersistenceError(f"{exc.__class__.__name__}: {exc} [{statement}]")


class DatabaseConnection(ABC):
    """Abstract base class for database connections."""

    @abstractmethod
    async def execute(self, query: str, *args) -> Any:
        """Execute a query and return the driver's result."""

    @abstractmethod
    async def executemany(self, query: str, args_list: List[Tuple]) -> Any:
        """Execute a query multiple times with different parameters."""

    @abstractmethod
    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        """Fetch one row from a query."""

    @abstractmethod
    async def fetchall(self, query: str, *args) -> List[Tuple]:
        """Fetch all rows from a query."""

    @abstractmethod
    def transaction(self):
        """Async context manager wrapping a single transaction."""

    @abstractmethod
    async def close(self) -> None:
        """Close the database connection."""

    async def fetchval(self, query: str, *args) -> Any:
        row = await self.fetchone(query, *args)
        return row[0] if row else None


class SQLiteConnection(DatabaseConnection):
    """SQLite database connection wrapper (autocommit unless inside ``transaction()``)."""

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> "SQLiteConnection":
        try:
            self.conn = await aiosqlite.connect(self.db_path, timeout=self.timeout, isolation_level=None)
            await self._optimize_connection()
        except sqlite3.Error as e:
            raise _persistence_error(e, "connect") from e
        return self

    async def _optimize_connection(self):
        """Apply SQLite performance optimizations."""
        await self.conn.execute("PRAGMA journal_mode=WAL")
        await self.conn.execute("PRAGMA synchronous=NORMAL")
        await self.conn.execute("PRAGMA cache_size=10000")
        await self.conn.execute("PRAGMA temp_store=MEMORY")
        await self.conn.execute("PRAGMA foreign_keys=ON")
        await self.conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")

    def _require(self) -> aiosqlite.Connection:
        if not self.conn:
            raise RuntimeError("Connection not established")
        return self.conn

    async def execute(self, query: str, *args) -> aiosqlite.Cursor:
        conn = self._require()
        try:
            return await conn.execute(to_sqlite_placeholders(query), args)
        except sqlite3.Error as e:
            raise _persistence_error(e, query) from e

    async def executemany(self, query: str, args_list: List[Tuple]) -> aiosqlite.Cursor:
        conn = self._require()
        try:
            return await conn.executemany(to_sqlite_placeholders(query), args_list)
        except sqlite3.Error as e:
            raise _persistence_error(e, query) from e

    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        conn = self._require()
        try:
            cursor = await conn.execute(to_sqlite_placeholders(query), args)
            return await cursor.fetchone()
        except sqlite3.Error as e:
            raise _persistence_error(e, query) from e

    async def fetchall(self, query: str, *args) -> List[Tuple]:
        conn = self._require()
        try:
            cursor = await conn.execute(to_sqlite_placeholders(query), args)
            return await cursor.fetchall()
        except sqlite3.Error as e:
            raise _persistence_error(e, query) from e

    @asynccontextmanager
    async def transaction(self):
        # IMMEDIATE takes the write lock up front so concurrent claimers serialize
        await self.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except BaseException:
            await self._require().execute("ROLLBACK")
            raise
        else:
            await self.execute("COMMIT")

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None


class PostgreSQLConnectionWrapper(DatabaseConnection):
    """Wrapper for a pooled asyncpg connection to match our interface."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def execute(self, query: str, *args) -> str:
        try:
            return await self.conn.execute(query, *args)
        except DRIVER_ERRORS as e:
            raise _persistence_error(e, query) from e

    async def executemany(self, query: str, args_list: List[Tuple]) -> None:
        try:
            return await self.conn.executemany(query, args_list)
        except DRIVER_ERRORS as e:
            raise _persistence_error(e, query) from e

    async def fetchone(self, query: str, *args) -> Optional[asyncpg.Record]:
        try:
            return await self.conn.fetchrow(query, *args)
        except DRIVER_ERRORS as e:
            raise _persistence_error(e, query) from e

    async def fetchall(self, query: str, *args) -> List[asyncpg.Record]:
        try:
            return await self.conn.fetch(query, *args)
        except DRIVER_ERRORS as e:
            raise _persistence_error(e, query) from e

    @asynccontextmanager
    async def transaction(self):
        async with self.conn.transaction():
            yield self

    async def close(self) -> None:
        # Connection is managed by the pool
        pass


class DatabasePool:
    """Connection pool for PostgreSQL; per-use connections for SQLite."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None
        self._initialized = False

    async def initialize(self):
        """Initialize the connection pool."""
        if self._initialized:
            return
        if self.config.backend == "postgresql":
            try:
                self.pool = await asyncpg.create_pool(
                    host=self.config.postgres_host,
                    port=self.config.postgres_port,
                    database=self.config.postgres_database,
                    user=self.config.postgres_user,
                    password=self.config.postgres_password,
                    min_size=1,
                    max_size=self.config.postgres_pool_size,
                    max_queries=self.config.postgres_max_queries,
                    max_inactive_connection_lifetime=self.config.postgres_max_inactive_connection_lifetime,
                )
            except (OSError,) + DRIVER_ERRORS as e:
                raise _persistence_error(e, "create_pool") from e
        elif self.config.backend != "sqlite":
            raise ValueError(f"Unsupported database backend: {self.config.backend}")
        self._initialized = True

    async def acquire(self) -> DatabaseConnection:
        """Acquire a database connection from the pool."""
        if not self._initialized:
            await self.initialize()

        if self.config.backend == "postgresql":
            conn = await self.pool.acquire()
            return PostgreSQLConnectionWrapper(conn)
        conn = SQLiteConnection(self.config.sqlite_path, self.config.sqlite_timeout)
        return await conn.connect()

    async def release(self, conn: DatabaseConnection):
        """Release a database connection back to the pool."""
        if isinstance(conn, PostgreSQLConnectionWrapper):
            if self.pool:
                await self.pool.release(conn.conn)
        else:
            await conn.close()

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
        self._initialized = False


class PooledConnection:
    """Context manager wrapper for pooled connections."""

    def __init__(self, pool: DatabasePool):
        self.conn: Optional[DatabaseConnection] = None
        self.pool = pool

    async def __aenter__(self) -> DatabaseConnection:
        self.conn = await self.pool.acquire()
        return self.conn

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            await self.pool.release(self.conn)
            self.conn = None


class Database:
    """Handle to the backing store, created once and passed to every component."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool = DatabasePool(config)

    @property
    def backend(self) -> str:
        return self.config.backend

    @property
    def is_postgres(self) -> bool:
        return self.config.backend == "postgresql"

    async def open(self) -> "Database":
        await self.pool.initialize()
        return self

    def connection(self) -> PooledConnection:
        """Return a context manager that handles connection acquisition/release."""
        return PooledConnection(self.pool)

    async def close(self):
        await self.pool.close()

    async def __aenter__(self) -> "Database":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
