"""Migration Ledger - the table recording every applied migration."""

import logging
from dataclasses import dataclass
from typing import List

import aiosqlite

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class MigrationRecord:
    """
    A ledger row. The stored down script is what rollback runs, even when
    the file on disk has been edited or deleted since it was applied.
    """

    id: int
    name: str
    up: str
    down: str

    @property
    def display_name(self) -> str:
        return f"{self.id:03d}-{self.name}"


class MigrationLedger:
    """
    Reads and writes the ledger table on an open connection.

    record() and forget() do not commit; the executor wraps them in the same
    transaction as the migration script.
    """

    def __init__(self, conn: aiosqlite.Connection, table: str = "migrations"):
        self.conn = conn
        self.table = table
        self._quoted = quote_identifier(table)

    async def ensure_table(self) -> None:
        """Create the ledger table if it doesn't exist."""
        await self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self._quoted} (
                id   INTEGER PRIMARY KEY,
                name TEXT    NOT NULL,
                up   TEXT    NOT NULL,
                down TEXT    NOT NULL
            )
            """
        )

    async def load(self) -> List[MigrationRecord]:
        async with self.conn.execute(
            f"SELECT id, name, up, down FROM {self._quoted} ORDER BY id ASC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            MigrationRecord(id=row[0], name=row[1], up=row[2], down=row[3])
            for row in rows
        ]

    async def record(self, migration) -> None:
        await self.conn.execute(
            f"INSERT INTO {self._quoted} (id, name, up, down) VALUES (?, ?, ?, ?)",
            (migration.id, migration.name, migration.up, migration.down),
        )

    async def forget(self, record: MigrationRecord) -> None:
        await self.conn.execute(
            f"DELETE FROM {self._quoted} WHERE id = ?",
            (record.id,),
        )
