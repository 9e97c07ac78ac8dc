# Author: PB
# Maintainer: PB
# Original date: 2025.06.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/protocols.py

"""Abstract protocols for snapshot backends and the transfer program."""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Optional, Protocol

from snapmirror.core.models import ChangeSet, DeleteReport, SnapshotRef


class SnapshotOracle(ABC):
    """Read-only view of one source's snapshots (what exists, what changed)."""

    @abstractmethod
    def list_head(self) -> Optional[SnapshotRef]:
        """Return the newest available snapshot, or None if there are none."""
        raise NotImplementedError("list_head() not implemented")

    @abstractmethod
    def exists(self, snapshot_id: SnapshotRef) -> bool:
        """Check whether a previously recorded snapshot is still present.

        A clean "not found" answer is False; failing to ask at all raises.
        """
        raise NotImplementedError("exists() not implemented")

    @abstractmethod
    def resolve_root(self, snapshot_id: SnapshotRef) -> AbstractContextManager[Path]:
        """Context manager yielding a readable root directory for the snapshot.

        The root stays valid until the context exits; backends that must
        mount something release it on exit, whatever the exit path.
        """
        raise NotImplementedError("resolve_root() not implemented")

    @abstractmethod
    def diff(self, old: SnapshotRef, new: SnapshotRef) -> ChangeSet:
        """Compute the change list that turns ``old`` into ``new``."""
        raise NotImplementedError("diff() not implemented")

    def is_ready(self) -> bool:
        """Whether the source can be read right now."""
        return True


class Transfer(Protocol):
    """Applies a plan to the target directory."""

    def mirror_root(self, source_root: Path, target_dir: Path) -> None:
        ...

    def mirror_file_list(self, source_root: Path, target_dir: Path,
                         relative_paths: list[str], recursive: bool = False) -> None:
        ...

    def delete_paths(self, target_dir: Path, relative_paths: list[str]) -> DeleteReport:
        ...
