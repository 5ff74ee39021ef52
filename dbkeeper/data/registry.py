"""Get-or-create registry of Database managers, keyed by DatabaseIdentity."""

import logging
from typing import Dict, Optional

from dbkeeper.base.config import DatabaseOptions, get_config
from dbkeeper.base.identity import DatabaseIdentity
from dbkeeper.data.db import Database

logger = logging.getLogger(__name__)


class DatabaseRegistry:
    """
    Hands out one Database per identity so a file is never opened twice
    through the registry. Closing a Database removes it, and a later lookup
    builds a fresh one.
    """

    def __init__(self):
        self._databases: Dict[DatabaseIdentity, Database] = {}
        self._default: Optional[Database] = None

    def get_or_create(self, options: DatabaseOptions) -> Database:
        identity = DatabaseIdentity.from_options(options)
        database = self._databases.get(identity)
        if database is None:
            database = Database(options, registry=self)
            self._databases[identity] = database
            logger.debug(f"[DatabaseRegistry] Registered {identity.describe()}")
        return database

    def default(self) -> Database:
        """The process-wide default Database, built from get_config()."""
        if self._default is None:
            self._default = self.get_or_create(get_config().database)
        return self._default

    def get(self, identity: DatabaseIdentity) -> Optional[Database]:
        return self._databases.get(identity)

    def discard(self, database: Database) -> None:
        """Forget a closed Database (and the default slot if it held it)."""
        if self._databases.get(database.identity) is database:
            del self._databases[database.identity]
        if self._default is database:
            self._default = None

    def clear(self) -> None:
        """Drop every entry without closing anything (mainly used for testing)."""
        self._databases.clear()
        self._default = None

    def __len__(self) -> int:
        return len(self._databases)


_registry: Optional[DatabaseRegistry] = None


def get_registry() -> DatabaseRegistry:
    global _registry
    if _registry is None:
        _registry = DatabaseRegistry()
    return _registry


def get_database(options: Optional[DatabaseOptions] = None) -> Database:
    """Get-or-create entry point: the Database for ``options``, or the default one."""
    if options is None:
        return get_registry().default()
    return get_registry().get_or_create(options)
