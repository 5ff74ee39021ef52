"""
Schema Migrations - Database Version Control

PURPOSE:
Keep the schema in sync with a directory of numbered SQL files, each holding
an Up and a Down section.

KEY CONCEPTS:
- **Migration**: A numbered SQL file that changes the schema
- **Ledger**: Table of applied migrations, with copies of their scripts
- **Plan**: Rollbacks of the newest applied migrations, then pending applies
"""

from .ledger import MigrationLedger, MigrationRecord
from .migration_runner import MigrationExecutor, MigrationRunner
from .planner import Drift, MigrationAction, PlannedStep, find_drift, plan_migrations
from .source import MigrationFile, parse_migration, read_migrations

__all__ = [
    'Drift',
    'MigrationAction',
    'MigrationExecutor',
    'MigrationFile',
    'MigrationLedger',
    'MigrationRecord',
    'MigrationRunner',
    'PlannedStep',
    'find_drift',
    'parse_migration',
    'plan_migrations',
    'read_migrations',
]
