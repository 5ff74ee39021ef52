"""
Migration Runner - Applies Database Schema Changes

This module ties the reader, the ledger and the planner together and runs the
resulting plan against an open connection, one transaction per step.
"""

import logging
import sqlite3
from typing import List, Optional, Sequence

import aiosqlite

from dbkeeper.base.config import MigrateOptions
from dbkeeper.data.migrations.ledger import MigrationLedger, MigrationRecord
from dbkeeper.data.migrations.planner import (
    MigrationAction,
    PlannedStep,
    find_drift,
    plan_migrations,
)
from dbkeeper.data.migrations.source import read_migrations
from dbkeeper.errors import DriftError, MigrationStepError

logger = logging.getLogger(__name__)


class MigrationExecutor:
    """
    Runs a reconciliation plan step by step.

    Each step is its own transaction: BEGIN, the step's script, the ledger
    write, COMMIT. A failing step is rolled back and stops the plan; steps
    committed before it stay applied.

    The connection must be opened with isolation_level=None so the driver
    never opens or commits transactions on its own.
    """

    def __init__(self, conn: aiosqlite.Connection, ledger: MigrationLedger):
        self.conn = conn
        self.ledger = ledger

    async def execute(self, plan: Sequence[PlannedStep]) -> None:
        for step in plan:
            await self._execute_step(step)

    async def _execute_step(self, step: PlannedStep) -> None:
        logger.info(f"[MigrationRunner] {step.action.value.capitalize()} {step.migration.display_name}")
        try:
            # executescript() commits any open transaction before running, so
            # BEGIN has to travel inside the script itself
            await self.conn.executescript(f"BEGIN;\n{step.script}")
            if step.action is MigrationAction.ROLLBACK:
                await self.ledger.forget(step.migration)
            else:
                await self.ledger.record(step.migration)
            await self.conn.commit()
        except sqlite3.Error as e:
            logger.error(f"[MigrationRunner] Failed to {step.action.value} {step.migration.display_name}: {e}")
            try:
                await self.conn.rollback()
            except sqlite3.Error as rollback_error:
                logger.error(f"[MigrationRunner] Rollback after failed step also failed: {rollback_error}")
            raise MigrationStepError(
                f"Failed to {step.action.value} migration {step.migration.display_name}: {e}",
                details={
                    "id": step.migration.id,
                    "name": step.migration.name,
                    "action": step.action.value,
                },
            ) from e


class MigrationRunner:
    """
    Discovers migration files and reconciles the database with them.

    Every run rescans the migrations directory and reloads the ledger, so
    edits to either between runs are always picked up.
    """

    def __init__(self, conn: aiosqlite.Connection, options: Optional[MigrateOptions] = None):
        """
        Args:
            conn: Open connection (isolation_level=None)
            options: Migration settings; defaults to MigrateOptions()
        """
        self.conn = conn
        self.options = options or MigrateOptions()
        self.ledger = MigrationLedger(conn, self.options.table)

    async def run(self) -> List[PlannedStep]:
        """
        Apply all pending migrations.

        Returns:
            The executed plan (empty when nothing had to change)

        Raises:
            MalformedMigrationError: a file could not be parsed (nothing touched)
            DriftError: drift found and drift_check is enabled (nothing touched)
            MigrationStepError: a step failed (earlier steps stay committed)
        """
        # Parse everything up front so a malformed file fails before any transaction
        files = read_migrations(self.options.migrations_path)
        if not files:
            logger.info("[MigrationRunner] No migration files found, nothing to do")
            return []

        await self.ledger.ensure_table()
        applied = await self.ledger.load()

        plan = plan_migrations(applied, files, self.options.force)

        drift = find_drift(applied, files, plan)
        if drift:
            message = (
                f"Ledger {self.options.table!r} and {self.options.migrations_path} disagree: "
                f"applied without file {drift.orphaned_ids}, "
                f"unapplied below the newest applied {drift.skipped_ids}"
            )
            if self.options.drift_check:
                raise DriftError(
                    message,
                    details={
                        "orphaned_ids": drift.orphaned_ids,
                        "skipped_ids": drift.skipped_ids,
                    },
                )
            logger.warning(f"[MigrationRunner] {message}")

        await MigrationExecutor(self.conn, self.ledger).execute(plan)

        if plan:
            logger.info(f"[MigrationRunner] Executed {len(plan)} steps: {', '.join(str(step) for step in plan)}")
        else:
            logger.info("[MigrationRunner] Schema is up to date")
        return plan

    async def history(self) -> List[MigrationRecord]:
        """Applied migrations, oldest first."""
        await self.ledger.ensure_table()
        return await self.ledger.load()
