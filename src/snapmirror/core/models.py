# Author: PB
# Maintainer: PB
# Original date: 2025.06.12
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/core/models.py

"""
Data model for the reconciliation engine.

BackupRecord is the only entity with a write side-effect; everything else
here is a value object produced and consumed within one reconciliation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

# Snapshot identifiers are opaque, backend-specific strings
SnapshotRef = str


class SourceKind(str, Enum):
    """Kind of versioned source; values are the stored ``backup_type`` strings."""
    DATASET = "dataset"
    RESTIC = "restic"


class ChangeType(str, Enum):
    ADDED = "+"
    MODIFIED = "M"
    REMOVED = "-"
    RENAMED = "R"


class ReconcileMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SKIP = "skip"


@dataclass(frozen=True)
class BackupRecord:
    source_kind: SourceKind
    source_name: str
    snapshot_id: SnapshotRef
    target_dir: Path
    recorded_at: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_kind.value, self.source_name, self.snapshot_id)


@dataclass(frozen=True)
class ChangeEntry:
    change_type: ChangeType
    path: str
    rename_target: Optional[str] = None


@dataclass(frozen=True)
class ChangeSet:
    """Change list between two snapshots.

    ``root`` is the absolute prefix carried by every path in ``entries``
    (the dataset mountpoint for zfs diff), or "" when paths are already
    relative to the snapshot root.
    """
    entries: tuple[ChangeEntry, ...]
    root: str = ""

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class TransferPlan:
    """What to apply to the target directory to reach head.

    ``sync_all`` mirrors the whole ``source_root`` with delete-extraneous
    semantics. Otherwise ``sync_files`` are copied as an explicit list,
    ``sync_trees`` (directories renamed into place) are copied with their
    whole contents, and nothing outside them is touched except ``deletions``
    (paths removed in head) and ``retired`` (origins of renamed paths).
    """
    source_root: Path
    sync_all: bool = False
    sync_files: frozenset[str] = frozenset()
    sync_trees: frozenset[str] = frozenset()
    deletions: frozenset[str] = frozenset()
    retired: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.sync_all and (self.sync_files or self.sync_trees or self.deletions
                              or self.retired):
            raise ValueError("A full plan cannot also carry a partial file list")

    @classmethod
    def full(cls, source_root: Path) -> "TransferPlan":
        return cls(source_root=Path(source_root), sync_all=True)

    @classmethod
    def incremental(cls, source_root: Path, deletions=(), sync_files=(),
                    retired=(), sync_trees=()) -> "TransferPlan":
        return cls(
            source_root=Path(source_root),
            sync_all=False,
            sync_files=frozenset(sync_files),
            sync_trees=frozenset(sync_trees),
            deletions=frozenset(deletions),
            retired=frozenset(retired),
        )

    @property
    def paths_to_delete(self) -> list[str]:
        return sorted(self.deletions | self.retired)

    @property
    def is_empty(self) -> bool:
        return not (self.sync_all or self.sync_files or self.sync_trees
                    or self.deletions or self.retired)


@dataclass(frozen=True)
class DeleteReport:
    deleted: int = 0
    errors: int = 0
    failures: tuple[str, ...] = ()


@dataclass
class ReconcileOutcome:
    source_kind: SourceKind
    source_name: str
    mode: ReconcileMode
    head: SnapshotRef
    baseline: Optional[SnapshotRef] = None
    plan: Optional[TransferPlan] = None
    deleted: int = 0
    recorded: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class ReconcileEvent:
    stage: str
    source_name: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
