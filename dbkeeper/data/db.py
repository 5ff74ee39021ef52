#
# PURPOSE:
# Owns the single SQLite connection for one database identity. The connection
# is opened lazily on first use, configured, migrated, and then shared by
# every caller until close().
#
# KEY CONCEPTS:
# - Async/Await: every engine call goes through aiosqlite's worker thread
# - Init lock: one asyncio.Lock makes "open + migrate" run exactly once even
#   when many tasks race at startup; waiters are released in arrival order
# - No caching on failure: a failed open or migration leaves the manager
#   CLOSED, so the next call retries the whole sequence
# - Explicit transactions: the driver runs with isolation_level=None and
#   never BEGINs or COMMITs behind our back
#

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, List, Optional, Sequence, Union

import aiosqlite

from dbkeeper.base.config import DatabaseOptions, MigrateOptions, get_config
from dbkeeper.base.identity import DatabaseIdentity
from dbkeeper.data.migrations.migration_runner import MigrationRunner
from dbkeeper.data.migrations.planner import PlannedStep
from dbkeeper.errors import BusyError, ErrorCode, OpenError, SqlExecutionError

logger = logging.getLogger(__name__)

Params = Union[Sequence[Any], dict]


class ConnectionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    MIGRATING = "migrating"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class RunResult:
    """Outcome of a single statement."""

    # Rows inserted, updated or deleted (trigger changes excluded)
    changes: int
    # Rowid of the last inserted row; meaningless if nothing was inserted
    last_id: Optional[int]


def _is_busy(error: sqlite3.Error) -> bool:
    if getattr(error, "sqlite_errorname", None) == "SQLITE_BUSY":
        return True
    text = str(error).lower()
    return "database is locked" in text or "busy" in text


async def _close_native(conn: aiosqlite.Connection) -> None:
    # aiosqlite's close() drops its sqlite3 handle and stops the worker even
    # when the engine refuses, so busy retries go to the sqlite3 handle itself
    # (on the worker thread it is bound to)
    await conn._execute(conn._conn.close)


class Database:
    """Connection lifecycle manager for one database identity."""

    # close() retries on SQLITE_BUSY: first attempt plus CLOSE_RETRIES more
    CLOSE_RETRIES = 10
    CLOSE_RETRY_DELAY = 0.05

    def __init__(self, options: Optional[DatabaseOptions] = None, registry=None):
        """
        Args:
            options: What to open and how; defaults to the global config
            registry: DatabaseRegistry tracking this instance, if any
        """
        self.options = options or get_config().database
        self.identity = DatabaseIdentity.from_options(self.options)
        self._registry = registry

        self._state = ConnectionState.CLOSED
        self._db_connection: Optional[aiosqlite.Connection] = None
        # asyncio.Lock for open/close - created lazily in connection()
        self._init_lock: Optional[asyncio.Lock] = None

    @staticmethod
    def instance() -> "Database":
        """Process-wide default database, built from get_config() on first use."""
        from dbkeeper.data.registry import get_registry
        return get_registry().default()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def _lock(self) -> asyncio.Lock:
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        return self._init_lock

    # -------- Lifecycle --------

    async def connection(self) -> aiosqlite.Connection:
        """
        Return the ready connection, opening and migrating it on first use.

        Concurrent first calls queue on the init lock; only the first runs the
        open sequence and the rest get the cached handle.

        Raises:
            OpenError: the file is missing/unopenable for the requested mode
            MigrationError: migrating the freshly opened database failed
        """
        # Fast path: already open
        if self._state is ConnectionState.OPEN:
            return self._db_connection

        async with self._lock():
            if self._state is ConnectionState.OPEN:
                return self._db_connection

            self._state = ConnectionState.OPENING
            conn: Optional[aiosqlite.Connection] = None
            try:
                conn = await self._open_handle()
                await self._configure(conn)

                if self.options.migrate is not None:
                    self._state = ConnectionState.MIGRATING
                    await MigrationRunner(conn, self.options.migrate).run()
            except BaseException:
                self._state = ConnectionState.CLOSED
                if conn is not None:
                    await self._discard_handle(conn)
                raise

            self._db_connection = conn
            self._state = ConnectionState.OPEN
            logger.info(f"[Database] Opened {self.identity.describe()}{' (WAL mode)' if self._uses_wal() else ''}")
            return conn

    async def _open_handle(self) -> aiosqlite.Connection:
        identity = self.identity

        if identity.file_backed:
            if identity.writable:
                identity.path.parent.mkdir(parents=True, exist_ok=True)
            if (identity.must_exist or identity.read_only) and not identity.path.exists():
                raise OpenError(
                    ErrorCode.DB_NOT_FOUND,
                    f"Database file {identity.path} does not exist",
                    details={
                        "path": str(identity.path),
                        "read_only": identity.read_only,
                        "must_exist": identity.must_exist,
                    },
                )

        try:
            conn = await aiosqlite.connect(
                identity.connect_target(),
                uri=True,
                isolation_level=None,
            )
        except (sqlite3.Error, OSError) as e:
            logger.error(f"[Database] Could not open {identity.describe()}: {e}")
            raise OpenError(
                ErrorCode.DB_CONNECTION_FAILED,
                f"Could not open database {identity.describe()}: {e}",
                details={"path": identity.describe()},
            ) from e

        conn.row_factory = sqlite3.Row
        return conn

    def _uses_wal(self) -> bool:
        # WAL has no meaning for :memory: and cannot be switched on read-only handles
        return self.identity.wal and self.identity.writable and self.identity.file_backed

    async def _configure(self, conn: aiosqlite.Connection) -> None:
        if self._uses_wal():
            await conn.execute("PRAGMA journal_mode=WAL;")

    async def _discard_handle(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.close()
        except sqlite3.Error as e:
            logger.warning(f"[Database] Error closing half-open connection: {e}")

    async def close(self) -> None:
        """
        Close the connection. Safe to call when already closed.

        While closing, the state is CLOSING and connection() callers wait on
        the lock instead of taking the handle; they get a fresh one once the
        close finishes.

        Raises:
            BusyError: the engine stayed busy through every retry; the
                connection stays open so close() can be tried again
        """
        async with self._lock():
            if self._db_connection is None:
                return

            conn = self._db_connection
            self._state = ConnectionState.CLOSING
            try:
                retries = self.CLOSE_RETRIES
                while True:
                    try:
                        await _close_native(conn)
                        break
                    except sqlite3.Error as e:
                        if not _is_busy(e):
                            raise
                        if retries <= 0:
                            logger.error(f"[Database] Still busy after {self.CLOSE_RETRIES} retries, giving up on close")
                            raise BusyError(
                                f"Database {self.identity.describe()} stayed busy while closing",
                                details={"retries": self.CLOSE_RETRIES},
                            ) from e
                        retries -= 1
                        await asyncio.sleep(self.CLOSE_RETRY_DELAY)

                # Engine handle is closed; this stops aiosqlite's worker thread
                await conn.close()
            except BaseException:
                if getattr(conn, "_connection", None) is None:
                    # aiosqlite already tore the handle down, nothing left to retry
                    self._forget_handle()
                else:
                    self._state = ConnectionState.OPEN
                raise

            self._forget_handle()
            logger.info(f"[Database] Connection to {self.identity.describe()} closed.")

    def _forget_handle(self) -> None:
        self._db_connection = None
        self._state = ConnectionState.CLOSED
        if self._registry is not None:
            self._registry.discard(self)

    # -------- Migrations --------

    async def migrate(self, options: Optional[MigrateOptions] = None) -> List[PlannedStep]:
        """
        Reconcile the schema with the migration files on the open connection.

        Runs under the same lock as open and close, so overlapping calls
        execute one after another and never share a transaction.

        Args:
            options: Overrides the configured MigrateOptions for this call

        Returns:
            The executed plan
        """
        while True:
            await self.connection()
            async with self._lock():
                # A close() may have won the lock after connection() returned
                if self._state is not ConnectionState.OPEN:
                    continue
                self._state = ConnectionState.MIGRATING
                try:
                    return await MigrationRunner(self._db_connection, options or self.options.migrate).run()
                finally:
                    self._state = ConnectionState.OPEN

    # -------- Statements --------

    async def exec(self, sql: str) -> None:
        """Run a multi-statement script; no rows are returned."""
        conn = await self.connection()
        try:
            await conn.executescript(sql)
        except sqlite3.Error as e:
            raise SqlExecutionError(str(e), details={"sql": sql}) from e

    async def run(self, sql: str, params: Params = ()) -> RunResult:
        """Run one statement and report how many rows it changed."""
        conn = await self.connection()
        try:
            async with conn.execute(sql, params) as cursor:
                return RunResult(changes=cursor.rowcount, last_id=cursor.lastrowid)
        except sqlite3.Error as e:
            raise SqlExecutionError(str(e), details={"sql": sql}) from e

    async def query(self, sql: str, params: Params = ()) -> List[sqlite3.Row]:
        """Return all rows of a query."""
        conn = await self.connection()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise SqlExecutionError(str(e), details={"sql": sql}) from e

    async def query_iterate(self, sql: str, params: Params = ()) -> AsyncIterator[sqlite3.Row]:
        """
        Yield the rows of a query one at a time.

        Forward-only: breaking out of the loop (or calling aclose()) closes
        the cursor, and the only way to start over is to call this again.
        """
        conn = await self.connection()
        try:
            async with conn.execute(sql, params) as cursor:
                async for row in cursor:
                    yield row
        except sqlite3.Error as e:
            raise SqlExecutionError(str(e), details={"sql": sql}) from e
