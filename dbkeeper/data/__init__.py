# ============================================================================
# dbkeeper/data/__init__.py
# Data Layer Package - Connection and Schema Management
# ============================================================================
#
# MODULES IN THIS PACKAGE:
# - **db.py**: Lazy, exclusive open/migrate/close of one SQLite connection
# - **registry.py**: One Database per identity, plus the default slot
# - **migrations/**: Reader, ledger, planner and executor for SQL migrations
#
# DATA FLOW:
# connection() → open → WAL pragma → MigrationRunner.run() → cached handle
#
# ============================================================================
