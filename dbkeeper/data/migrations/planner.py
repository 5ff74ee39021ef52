"""
Migration Planner - reconciles the ledger against the files on disk.

Only the tail of applied history is ever mutated:

1. Rollback phase: walk the ledger from the highest id down. A row is rolled
   back when its file is gone, or when force=REAPPLY_LAST and it is the
   newest file. The walk stops at the first row that is neither.
2. Apply phase: every file with an id above the highest id still in the
   ledger is applied, in ascending order.

A ledger row whose file vanished below that stopping point, or a file whose
id sits below the highest applied id without being applied, is drift. The
plan ignores it; find_drift() reports it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Union

from dbkeeper.base.config import ForcePolicy
from dbkeeper.data.migrations.ledger import MigrationRecord
from dbkeeper.data.migrations.source import MigrationFile


class MigrationAction(Enum):
    APPLY = "apply"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class PlannedStep:
    action: MigrationAction
    migration: Union[MigrationFile, MigrationRecord]

    @property
    def script(self) -> str:
        if self.action is MigrationAction.ROLLBACK:
            return self.migration.down
        return self.migration.up

    def __str__(self) -> str:
        return f"{self.action.value} {self.migration.display_name}"


@dataclass(frozen=True)
class Drift:
    # Applied rows whose file is gone but which the plan leaves in place
    orphaned_ids: List[int] = field(default_factory=list)
    # Files that are not applied but sit below the highest applied id
    skipped_ids: List[int] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.orphaned_ids or self.skipped_ids)


def plan_migrations(
    applied: Sequence[MigrationRecord],
    files: Sequence[MigrationFile],
    force: Optional[ForcePolicy] = None,
) -> List[PlannedStep]:
    """
    Compute the ordered rollback-then-apply plan.

    Args:
        applied: Ledger rows (any order)
        files: Migration files (any order)
        force: REAPPLY_LAST to always redo the newest file's migration

    Returns:
        Rollback steps (highest id first) followed by apply steps (ascending)
    """
    file_ids = {migration.id for migration in files}
    last_file_id = max(file_ids) if file_ids else None

    plan: List[PlannedStep] = []
    remaining = sorted(applied, key=lambda record: record.id)

    for record in sorted(applied, key=lambda record: record.id, reverse=True):
        missing = record.id not in file_ids
        reapply = force is ForcePolicy.REAPPLY_LAST and record.id == last_file_id
        if not (missing or reapply):
            break
        plan.append(PlannedStep(MigrationAction.ROLLBACK, record))
        remaining.remove(record)

    highest_remaining = remaining[-1].id if remaining else 0
    for migration in sorted(files, key=lambda migration: migration.id):
        if migration.id > highest_remaining:
            plan.append(PlannedStep(MigrationAction.APPLY, migration))

    return plan


def find_drift(
    applied: Sequence[MigrationRecord],
    files: Sequence[MigrationFile],
    plan: Sequence[PlannedStep],
) -> Drift:
    """Report ledger/file mismatches that the plan will leave behind."""
    file_ids = {migration.id for migration in files}
    rolled_back = {
        step.migration.id for step in plan if step.action is MigrationAction.ROLLBACK
    }
    to_apply = {
        step.migration.id for step in plan if step.action is MigrationAction.APPLY
    }
    kept_ids = {record.id for record in applied} - rolled_back

    orphaned = sorted(record_id for record_id in kept_ids if record_id not in file_ids)
    skipped = sorted(
        file_id for file_id in file_ids
        if file_id not in kept_ids and file_id not in to_apply
    )
    return Drift(orphaned_ids=orphaned, skipped_ids=skipped)
