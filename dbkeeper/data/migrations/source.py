"""
Migration Source Reader - parses the migrations directory.

Files are named ``NNN-name.sql`` or ``NNN.name.sql``. The number is the
migration id and the only ordering key; the name is for humans. Each file
holds an Up section, a ``-- down`` marker line, then a Down section::

    -- Up
    CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT);

    -- Down
    DROP TABLE settings;
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Union

from dbkeeper.errors import MalformedMigrationError

logger = logging.getLogger(__name__)

FILENAME_PATTERN = re.compile(r"^(\d+)[-.](.+?)\.sql$")
DOWN_MARKER = re.compile(r"^--[ \t]*down\b", re.IGNORECASE | re.MULTILINE)

# Line-based and not SQL-aware: a "--" line inside a multi-line string literal is stripped too
COMMENT_LINE = re.compile(r"^--.*$", re.MULTILINE)


@dataclass(frozen=True)
class MigrationFile:
    """Represents a single migration file."""

    id: int
    name: str
    up: str
    down: str
    filename: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.id:03d}-{self.name}"


def parse_migration(filename: str, content: str) -> MigrationFile:
    """
    Parse one migration file body.

    Args:
        filename: File name (not path), used for the id, the name and errors
        content: Full text of the file

    Raises:
        MalformedMigrationError: name does not match or the down marker is missing
    """
    match = FILENAME_PATTERN.match(filename)
    if not match:
        raise MalformedMigrationError(
            filename, f"{filename} is not named like NNN-name.sql"
        )

    parts = DOWN_MARKER.split(content, maxsplit=1)
    if len(parts) < 2:
        raise MalformedMigrationError(
            filename, f"The {filename} file does not contain '-- Down' separator."
        )
    up, down = parts

    return MigrationFile(
        id=int(match.group(1)),
        name=match.group(2),
        up=COMMENT_LINE.sub("", up).strip(),
        down=down.strip(),
        filename=filename,
    )


def read_migrations(directory: Union[str, Path]) -> List[MigrationFile]:
    """
    Discover and parse every migration file in ``directory``.

    Returns:
        Migrations sorted by id; empty when the directory is missing or empty

    Raises:
        MalformedMigrationError: a file cannot be parsed or two files share an id
    """
    location = Path(directory)
    if not location.is_dir():
        logger.info(f"[MigrationSource] No migrations directory at {location}")
        return []

    by_id: Dict[int, MigrationFile] = {}
    for sql_file in sorted(location.iterdir()):
        if not sql_file.is_file() or not FILENAME_PATTERN.match(sql_file.name):
            continue

        migration = parse_migration(sql_file.name, sql_file.read_text(encoding="utf-8"))

        existing = by_id.get(migration.id)
        if existing is not None:
            raise MalformedMigrationError(
                sql_file.name,
                f"Migration id {migration.id} is used by both "
                f"{existing.filename} and {sql_file.name}",
            )
        by_id[migration.id] = migration

    migrations = [by_id[key] for key in sorted(by_id)]
    logger.info(f"[MigrationSource] Discovered {len(migrations)} migrations in {location}")
    return migrations
