# Author: PB
# Maintainer: PB
# Original date: 2025.06.12
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/core/reconciler.py

"""
Reconciliation engine: decide what to mirror for one source, then do it.

For each source the reconciler:

1. checks the target directory and the source's readiness,
2. walks the backup history (most recent first) until it finds a recorded
   snapshot the backend still has (the baseline),
3. compares the baseline with the newest snapshot (the head) to choose a
   full, incremental or skip run,
4. builds a TransferPlan, applies deletions before syncs, and
5. records the head in the history once the plan has been applied.

Decisions are reported as ReconcileEvents and loguru messages; the
reconciler never prints.
"""

from datetime import datetime, UTC
from pathlib import Path
from typing import Callable, Optional

import loguru

from snapmirror.config.sources import SourceConfig
from snapmirror.core.models import (
    BackupRecord,
    ChangeSet,
    ChangeType,
    ReconcileEvent,
    ReconcileMode,
    ReconcileOutcome,
    SnapshotRef,
    TransferPlan,
)
from snapmirror.storage.factory import create_oracle
from snapmirror.storage.history import HistoryStore
from snapmirror.storage.protocols import SnapshotOracle, Transfer
from snapmirror.system.exceptions import (
    NoSnapshotsAvailableError,
    PartialDeleteFailureError,
    SnapMirrorError,
    SourceNotReadyError,
    TargetUnavailableError,
)

logger = loguru.logger

OracleFactory = Callable[[SourceConfig], SnapshotOracle]
EventCallback = Callable[[ReconcileEvent], None]


def check_target_directory(target_dir: Path) -> None:
    """Raise TargetUnavailableError unless ``target_dir`` is an existing directory."""
    target_dir = Path(target_dir)
    if not target_dir.exists():
        raise TargetUnavailableError(
            f"Target directory '{target_dir}' does not exist. Is the removable device mounted?",
            target_dir=str(target_dir),
        )
    if not target_dir.is_dir():
        raise TargetUnavailableError(
            f"'{target_dir}' exists but is not a directory",
            target_dir=str(target_dir),
        )


def select_mode(baseline: Optional[SnapshotRef], head: SnapshotRef) -> ReconcileMode:
    if baseline is None:
        return ReconcileMode.FULL
    if baseline == head:
        return ReconcileMode.SKIP
    return ReconcileMode.INCREMENTAL


def relative_to_root(path: str, root: str) -> str:
    """Strip the mount-root prefix and any leading slash from a backend path."""
    prefix = root.rstrip("/")
    if prefix and (path == prefix or path.startswith(prefix + "/")):
        path = path[len(prefix):]
    return path.lstrip("/")


def build_incremental_plan(changes: ChangeSet, source_root: Path) -> TransferPlan:
    """Partition a change list into deletions, retired rename origins and paths to sync.

    Entries that reduce to the root itself are dropped, as are sync entries
    naming a directory (trailing slash); rsync creates parents as needed.
    A rename destination that is a directory in ``source_root`` goes to
    ``sync_trees``: the change list names only the directory, not its
    unchanged contents.
    """
    sync_files: set[str] = set()
    sync_trees: set[str] = set()
    deletions: set[str] = set()
    retired: set[str] = set()

    def add_sync(raw_path: str) -> None:
        rel_path = relative_to_root(raw_path, changes.root)
        if rel_path and not rel_path.endswith("/"):
            sync_files.add(rel_path)

    def add_renamed(raw_path: str) -> None:
        rel_path = relative_to_root(raw_path, changes.root).rstrip("/")
        if not rel_path:
            return
        head_path = Path(source_root) / rel_path
        if head_path.is_dir() and not head_path.is_symlink():
            sync_trees.add(rel_path)
        else:
            sync_files.add(rel_path)

    def add_delete(raw_path: str, bucket: set[str]) -> None:
        rel_path = relative_to_root(raw_path, changes.root).rstrip("/")
        if rel_path:
            bucket.add(rel_path)

    for entry in changes.entries:
        if entry.change_type in (ChangeType.ADDED, ChangeType.MODIFIED):
            add_sync(entry.path)
        elif entry.change_type is ChangeType.RENAMED:
            if entry.rename_target:
                add_renamed(entry.rename_target)
            add_delete(entry.path, retired)
        elif entry.change_type is ChangeType.REMOVED:
            add_delete(entry.path, deletions)

    return TransferPlan.incremental(
        source_root,
        deletions=deletions,
        sync_files=sync_files,
        sync_trees=sync_trees,
        retired=retired,
    )


class Reconciler:
    """Bring one source's target directory up to its newest snapshot."""

    def __init__(self, history: HistoryStore, transfer: Transfer,
                 oracle_factory: OracleFactory = create_oracle,
                 on_event: Optional[EventCallback] = None,
                 dry_run: bool = False,
                 clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self.history = history
        self.transfer = transfer
        self.oracle_factory = oracle_factory
        self.on_event = on_event
        self.dry_run = dry_run
        self.clock = clock

    def _emit(self, stage: str, source_name: str, message: str, **data) -> None:
        logger.debug(f"[{source_name}] {stage}: {message}")
        if self.on_event is not None:
            self.on_event(ReconcileEvent(stage, source_name, message, data))

    def reconcile(self, source: SourceConfig) -> ReconcileOutcome:
        """Run one reconciliation; raises a SnapMirrorError naming the source on failure."""
        try:
            return self._reconcile(source)
        except SnapMirrorError as e:
            if e.source is None:
                e.source = source.source_name
            raise

    def _reconcile(self, source: SourceConfig) -> ReconcileOutcome:
        name = source.source_name
        self._emit("start", name, str(source), kind=source.kind.value)

        check_target_directory(source.target_dir)

        oracle = self.oracle_factory(source)
        if not oracle.is_ready():
            raise SourceNotReadyError(f"Source '{name}' is NOT mounted")
        self._emit("ready", name, f"Source '{name}' is ready")

        records = self.history.list_by_source(source.kind, name)
        baseline = self.find_baseline(name, records, oracle)

        head = oracle.list_head()
        if head is None:
            raise NoSnapshotsAvailableError(f"No snapshots found for '{name}'")
        self._emit("head", name, f"Latest snapshot: {head}", head=head)

        mode = select_mode(baseline, head)
        outcome = ReconcileOutcome(
            source_kind=source.kind,
            source_name=name,
            mode=mode,
            head=head,
            baseline=baseline,
            dry_run=self.dry_run,
        )
        self._emit("mode", name, _describe_mode(mode, baseline, head),
                   mode=mode.value, baseline=baseline, head=head)

        if mode is ReconcileMode.SKIP:
            return outcome

        with oracle.resolve_root(head) as head_root:
            if mode is ReconcileMode.FULL:
                plan = TransferPlan.full(head_root)
            else:
                changes = oracle.diff(baseline, head)
                self._emit("diff", name, f"Found {len(changes)} change(s)", changes=len(changes))
                plan = build_incremental_plan(changes, head_root)

            outcome.plan = plan
            self._emit("plan", name, _describe_plan(plan),
                       sync_all=plan.sync_all, sync_files=len(plan.sync_files),
                       sync_trees=len(plan.sync_trees),
                       deletions=len(plan.deletions), retired=len(plan.retired))

            if self.dry_run:
                return outcome

            outcome.deleted = self.apply(plan, source.target_dir)

        outcome.recorded = self._record(source, head)
        return outcome

    def find_baseline(self, source_name: str, records: list[BackupRecord],
                      oracle: SnapshotOracle) -> Optional[SnapshotRef]:
        """First recorded snapshot (most recent first) the backend still has.

        An existence check that fails is treated as inconclusive: it is
        logged and the walk moves on to the next older record.
        """
        for record in records:
            try:
                still_exists = oracle.exists(record.snapshot_id)
            except SnapMirrorError as e:
                logger.warning(f"Failed to check if snapshot {record.snapshot_id} exists: {e}")
                self._emit("baseline_check_failed", source_name,
                           f"Could not verify {record.snapshot_id}: {e}",
                           snapshot=record.snapshot_id)
                continue

            if still_exists:
                self._emit("baseline", source_name,
                           f"Last successful backup: {record.snapshot_id} (at {record.recorded_at})",
                           snapshot=record.snapshot_id)
                return record.snapshot_id

            self._emit("baseline_missing", source_name,
                       f"Snapshot {record.snapshot_id} no longer exists, checking older backups",
                       snapshot=record.snapshot_id)

        self._emit("baseline", source_name, "No previous backup found with existing snapshot",
                   snapshot=None)
        return None

    def apply(self, plan: TransferPlan, target_dir: Path) -> int:
        """Apply ``plan`` to ``target_dir``: every deletion first, then the sync.

        Returns the number of deleted paths. If any deletion failed, no sync
        is started and PartialDeleteFailureError is raised.
        """
        deleted = 0
        to_delete = plan.paths_to_delete
        if to_delete:
            report = self.transfer.delete_paths(target_dir, to_delete)
            deleted = report.deleted
            if report.errors:
                raise PartialDeleteFailureError(
                    f"{report.errors} item(s) failed to delete",
                    deleted=report.deleted, errors=report.errors,
                    failures=list(report.failures),
                )

        if plan.sync_all:
            self.transfer.mirror_root(plan.source_root, target_dir)
        else:
            if plan.sync_files:
                self.transfer.mirror_file_list(plan.source_root, target_dir,
                                               sorted(plan.sync_files))
            if plan.sync_trees:
                self.transfer.mirror_file_list(plan.source_root, target_dir,
                                               sorted(plan.sync_trees), recursive=True)
        return deleted

    def _record(self, source: SourceConfig, head: SnapshotRef) -> bool:
        """Append head to the history; False if it was already recorded."""
        record = BackupRecord(
            source_kind=source.kind,
            source_name=source.source_name,
            snapshot_id=head,
            target_dir=Path(source.target_dir),
            recorded_at=self.clock(),
        )
        inserted = self.history.append(record)
        self._emit("recorded", source.source_name, f"Backup of {head} recorded",
                   snapshot=head, inserted=inserted)
        return inserted


def _describe_mode(mode: ReconcileMode, baseline: Optional[SnapshotRef], head: SnapshotRef) -> str:
    if mode is ReconcileMode.FULL:
        return "No previous backup found - performing full backup"
    if mode is ReconcileMode.SKIP:
        return "Already backed up - nothing to do"
    return f"Incremental backup needed (last: {baseline}, current: {head})"


def _describe_plan(plan: TransferPlan) -> str:
    if plan.sync_all:
        return f"Full mirror of {plan.source_root}"
    if plan.is_empty:
        return "No changes detected between snapshots"
    return (f"{len(plan.sync_files)} to sync, {len(plan.sync_trees)} tree(s) to copy, "
            f"{len(plan.deletions)} to delete, "
            f"{len(plan.retired)} renamed away")
