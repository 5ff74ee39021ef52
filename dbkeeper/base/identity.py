from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dbkeeper.base.config import DatabaseOptions

MEMORY_TARGET = ":memory:"


@dataclass(frozen=True)
class DatabaseIdentity:
    """Which physical (or in-memory) database a connection targets, and how."""

    path: Optional[Path]
    memory: bool = False
    read_only: bool = False
    must_exist: bool = False
    wal: bool = True

    @classmethod
    def from_options(cls, options: DatabaseOptions) -> "DatabaseIdentity":
        path = None if options.memory else Path(options.path).expanduser().resolve()
        return cls(
            path=path,
            memory=options.memory,
            read_only=options.read_only,
            must_exist=options.must_exist,
            wal=options.wal,
        )

    @property
    def file_backed(self) -> bool:
        return not self.memory

    @property
    def writable(self) -> bool:
        return not self.read_only

    def connect_target(self) -> str:
        """SQLite URI for this identity (requires uri=True on connect)."""
        if self.memory:
            return MEMORY_TARGET
        if self.read_only:
            mode = "ro"
        elif self.must_exist:
            mode = "rw"
        else:
            mode = "rwc"
        return f"{self.path.as_uri()}?mode={mode}"

    def describe(self) -> str:
        return MEMORY_TARGET if self.memory else str(self.path)
