# Author: PB
# Maintainer: PB
# Original date: 2025.01.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/snapshots.py

"""ZFS snapshot oracle: snapshots are read through <mountpoint>/.zfs/snapshot."""

import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import loguru

from snapmirror.core.models import ChangeEntry, ChangeSet, ChangeType, SnapshotRef
from snapmirror.system.exceptions import BackendLogicError
from snapmirror.system.execution import CommandExecutor as ce
from .protocols import SnapshotOracle

logger = loguru.logger

ZFS_SNAPSHOT_DIR = ".zfs/snapshot"
RENAME_SEPARATOR = " -> "

_OCTAL_ESCAPE = re.compile(rb"\\([0-7]{3})")


def unescape_zfs_path(path: str) -> str:
    """Decode the \\ooo octal escapes zfs diff uses for spaces and non-ASCII bytes."""
    if "\\" not in path:
        return path
    raw = _OCTAL_ESCAPE.sub(lambda m: bytes([int(m.group(1), 8)]), path.encode("utf-8"))
    return raw.decode("utf-8", errors="surrogateescape")


def parse_zfs_diff_line(line: str) -> Optional[ChangeEntry]:
    """Parse one ``zfs diff -H`` record: <code>\\t<path>[\\t<new path>]."""
    parts = line.split("\t")
    if len(parts) < 2 or not parts[0]:
        return None

    try:
        change_type = ChangeType(parts[0][0])
    except ValueError:
        logger.debug(f"Ignoring zfs diff record with unknown change type: {line!r}")
        return None

    path = parts[1]
    rename_target = None
    if change_type is ChangeType.RENAMED:
        if len(parts) >= 3:
            rename_target = parts[2]
        elif RENAME_SEPARATOR in path:
            path, rename_target = path.split(RENAME_SEPARATOR, 1)
        else:
            logger.debug(f"Rename record without a destination: {line!r}")
            return None
        rename_target = unescape_zfs_path(rename_target)

    return ChangeEntry(change_type, unescape_zfs_path(path), rename_target)


class ZFSOracle(SnapshotOracle):
    """Snapshot oracle for one ZFS dataset, using the zfs command line."""

    def __init__(self, dataset: str, use_sudo: bool = False) -> None:
        self.dataset = dataset
        self.use_sudo = use_sudo

    def _run(self, cmd: list[str], check: bool = False):
        if self.use_sudo:
            return ce.run_sudo(cmd, check=check)
        return ce.run_local(cmd, check=check)

    def is_ready(self) -> bool:
        """True when ``zfs get mounted`` reports the dataset as mounted."""
        result = self._run(["zfs", "get", "-H", "mounted", self.dataset], check=True)
        # Format: dataset\tmounted\tyes|no\tsource
        fields = result.stdout.split("\t")
        return len(fields) > 2 and fields[2].strip() == "yes"

    def list_head(self) -> Optional[SnapshotRef]:
        # -s creation sorts oldest first; the last line is the newest snapshot
        result = self._run(
            ["zfs", "list", "-t", "snapshot", "-o", "name", "-s", "creation", "-H", self.dataset],
            check=True,
        )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return names[-1] if names else None

    def exists(self, snapshot_id: SnapshotRef) -> bool:
        result = self._run(["zfs", "list", "-H", "-t", "snapshot", snapshot_id])
        return result.returncode == 0

    def mountpoint(self, dataset: Optional[str] = None) -> str:
        """Mountpoint of ``dataset`` (default: this oracle's dataset)."""
        result = self._run(
            ["zfs", "get", "-H", "-o", "value", "mountpoint", dataset or self.dataset],
            check=True,
        )
        return result.stdout.strip()

    def snapshot_path(self, snapshot_id: SnapshotRef) -> Path:
        """Hidden snapshot directory for ``<dataset>@<label>``."""
        parts = snapshot_id.split("@")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise BackendLogicError(f"Invalid snapshot name format: {snapshot_id}")
        dataset, label = parts
        return Path(self.mountpoint(dataset)) / ZFS_SNAPSHOT_DIR / label

    @contextmanager
    def resolve_root(self, snapshot_id: SnapshotRef) -> Iterator[Path]:
        # Snapshots are always browsable; nothing to release
        yield self.snapshot_path(snapshot_id)

    def diff(self, old: SnapshotRef, new: SnapshotRef) -> ChangeSet:
        logger.debug(f"Computing zfs diff {old} {new}")
        result = self._run(["zfs", "diff", "-H", old, new], check=True)

        entries = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            entry = parse_zfs_diff_line(line)
            if entry is not None:
                entries.append(entry)

        return ChangeSet(entries=tuple(entries), root=self.mountpoint())

    def __repr__(self) -> str:
        return f"ZFSOracle({self.dataset!r})"
