# ============================================================================
# dbkeeper/base/config.py
# Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every setting the connection manager and the migration engine read:
# which database file to open, in which mode, whether and how to migrate it,
# and how verbose logging should be.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: immutable option records, safe to share and hash
# 2. Environment variables: DBKEEPER_* overrides without touching code
# 3. Singleton: one global config via get_config() / set_config()
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================================
# Migration Configuration
# ============================================================================

class ForcePolicy(Enum):
    # Roll back the newest applied migration and apply it again on every run
    REAPPLY_LAST = "reapply-last"

    @classmethod
    def from_value(cls, value: Union[None, bool, str, "ForcePolicy"]) -> Optional["ForcePolicy"]:
        """Normalize user input: None/False/"" mean no forcing, "last" is the legacy spelling."""
        if value is None or value is False or value == "":
            return None
        if isinstance(value, ForcePolicy):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in ("false", "no", "off", "0"):
                return None
            if normalized in ("last", cls.REAPPLY_LAST.value):
                return cls.REAPPLY_LAST
        raise ValueError(f"Unknown force policy: {value!r}")


@dataclass(frozen=True)
class MigrateOptions:
    # None = only apply what is missing; REAPPLY_LAST = redo the newest migration
    force: Optional[ForcePolicy] = None

    # Name of the ledger table recording applied migrations
    table: str = "migrations"

    # Directory containing NNN-name.sql files (relative paths resolve against cwd)
    migrations_path: Path = field(default_factory=lambda: Path("migrations"))

    # Raise DriftError instead of logging a warning when ledger and files disagree
    drift_check: bool = False

    def __post_init__(self):
        # Accept plain strings for force/path so callers can pass config-file values
        object.__setattr__(self, "force", ForcePolicy.from_value(self.force))
        object.__setattr__(self, "migrations_path", Path(self.migrations_path))
        if not self.table:
            raise ValueError("Migration table name must not be empty")


# ============================================================================
# Database Configuration
# ============================================================================

@dataclass(frozen=True)
class DatabaseOptions:
    # Database file; ignored when memory=True
    path: Path = field(default_factory=lambda: Path("data") / "sqlite3.db")

    # Open a private in-memory database instead of a file
    memory: bool = False

    # Open read-only (the file must already exist)
    read_only: bool = False

    # Refuse to create the file if it does not exist
    must_exist: bool = False

    # Durability mode: switch the journal to write-ahead logging on open
    wal: bool = True

    # None disables migrations on open
    migrate: Optional[MigrateOptions] = field(default_factory=MigrateOptions)

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # None = console only
    file_path: Optional[Path] = None
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass(frozen=True)
class KeeperConfig:
    database: DatabaseOptions = field(default_factory=DatabaseOptions)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls) -> "KeeperConfig":
        migrate: Optional[MigrateOptions] = None
        if _env_flag("DBKEEPER_MIGRATE", "true"):
            migrate = MigrateOptions(
                force=os.getenv("DBKEEPER_MIGRATE_FORCE") or None,
                table=os.getenv("DBKEEPER_MIGRATIONS_TABLE", "migrations"),
                migrations_path=Path(os.getenv("DBKEEPER_MIGRATIONS_PATH", "migrations")),
                drift_check=_env_flag("DBKEEPER_DRIFT_CHECK", "false"),
            )

        database = DatabaseOptions(
            path=Path(os.getenv("DBKEEPER_DB_PATH", str(Path("data") / "sqlite3.db"))),
            memory=_env_flag("DBKEEPER_MEMORY", "false"),
            read_only=_env_flag("DBKEEPER_READ_ONLY", "false"),
            must_exist=_env_flag("DBKEEPER_MUST_EXIST", "false"),
            wal=_env_flag("DBKEEPER_WAL", "true"),
            migrate=migrate,
        )

        log_file = os.getenv("DBKEEPER_LOG_FILE")
        log = LogConfig(
            level=os.getenv("DBKEEPER_LOG_LEVEL", "INFO"),
            file_path=Path(log_file) if log_file else None,
        )

        return cls(database=database, log=log)


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[KeeperConfig] = None


def get_config() -> KeeperConfig:
    """
    Get the global configuration instance.

    Loads it from the environment on first use and reuses it afterwards.
    """
    global _config
    if _config is None:
        _config = KeeperConfig.from_env()
    return _config


def set_config(config: Optional[KeeperConfig]) -> None:
    """
    Replace the global configuration (mainly used for testing).

    Passing None makes the next get_config() reload from the environment.
    """
    global _config
    _config = config


def setup_logging(config: Optional[KeeperConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console logging and, when a file path is configured, a rotating
    file handler. Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_path is not None:
        from logging.handlers import RotatingFileHandler
        cfg.log.file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.log.file_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper(), logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
    logger.debug(f"Logging configured at level {cfg.log.level}")
