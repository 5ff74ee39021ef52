"""Structured error taxonomy for dbkeeper."""
#
# PURPOSE:
# Every failure the package raises carries an error code, a human-readable
# message and an optional details dict, so callers can branch on the code
# instead of parsing messages.
#
# ERROR CODE FORMAT:
# - DB_XXX: Connection and statement errors
# - MIGRATION_XXX: Migration source, planning and execution errors
# - CONFIG_XXX: Configuration errors
#
# USAGE:
#   from dbkeeper.errors import OpenError, ErrorCode
#
#   raise OpenError(
#       ErrorCode.DB_NOT_FOUND,
#       "Database file does not exist",
#       details={"path": "/tmp/app.db"}
#   )
#
import json
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Database Errors
    DB_CONNECTION_FAILED = "DB_001"
    DB_NOT_FOUND = "DB_002"
    DB_BUSY = "DB_003"
    DB_QUERY_FAILED = "DB_004"

    # Migration Errors
    MIGRATION_MALFORMED = "MIGRATION_001"
    MIGRATION_STEP_FAILED = "MIGRATION_002"
    MIGRATION_DRIFT = "MIGRATION_003"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"


class DbKeeperError(Exception):
    """
    Base exception class for dbkeeper with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "DB_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}

        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON serialization.

        Returns:
            Dictionary with code, message and details
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class OpenError(DbKeeperError):
    """Raised when the database cannot be opened with the requested mode."""


class BusyError(DbKeeperError):
    """Raised when close() keeps hitting SQLITE_BUSY after all retries."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.DB_BUSY, message, details)


class SqlExecutionError(DbKeeperError):
    """Raised when a statement fails inside the engine."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.DB_QUERY_FAILED,
    ):
        super().__init__(code, message, details)


class MigrationError(DbKeeperError):
    """Base class for migration failures."""


class MalformedMigrationError(MigrationError):
    """Raised when a migration file cannot be parsed."""

    def __init__(self, filename: str, message: str):
        super().__init__(
            ErrorCode.MIGRATION_MALFORMED,
            message,
            details={"filename": filename},
        )
        self.filename = filename


class MigrationStepError(MigrationError, SqlExecutionError):
    """Raised when a statement fails inside a migration transaction."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        DbKeeperError.__init__(self, ErrorCode.MIGRATION_STEP_FAILED, message, details)


class DriftError(MigrationError):
    """Raised when the ledger and the migration files disagree outside the rollback window."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.MIGRATION_DRIFT, message, details)


__all__ = [
    "ErrorCode",
    "DbKeeperError",
    "OpenError",
    "BusyError",
    "SqlExecutionError",
    "MigrationError",
    "MalformedMigrationError",
    "MigrationStepError",
    "DriftError",
]
