# ============================================================================
# dbkeeper/__init__.py
# Single-owner SQLite access with file-based schema migrations
# ============================================================================
#
# PACKAGE LAYOUT:
# - **errors.py**: Error codes and the exception hierarchy
# - **base/**: Configuration, logging setup, database identity
# - **data/**: Connection lifecycle manager, registry, migration engine
#
# ============================================================================

from dbkeeper.base.config import (
    DatabaseOptions,
    ForcePolicy,
    KeeperConfig,
    MigrateOptions,
    get_config,
    set_config,
    setup_logging,
)
from dbkeeper.data.db import ConnectionState, Database, RunResult
from dbkeeper.data.registry import DatabaseRegistry, get_database, get_registry

__all__ = [
    "ConnectionState",
    "Database",
    "DatabaseOptions",
    "DatabaseRegistry",
    "ForcePolicy",
    "KeeperConfig",
    "MigrateOptions",
    "RunResult",
    "get_config",
    "get_database",
    "get_registry",
    "set_config",
    "setup_logging",
]
