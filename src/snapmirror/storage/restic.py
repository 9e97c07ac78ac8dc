# Author: PB
# Maintainer: PB
# Original date: 2025.06.14
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/restic.py

"""
Restic snapshot oracle.

restic has no browsable snapshot directory and no native diff, so snapshots
are exposed through ``restic mount`` (a FUSE filesystem served by a
background process) and diffs are synthesized with rsync dry runs between
two mounted snapshots.
"""

import subprocess
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterator, Optional

import loguru
import orjson

from snapmirror.core.models import ChangeEntry, ChangeSet, ChangeType, SnapshotRef
from snapmirror.system.exceptions import BackendLogicError, BackendTransportError, MountTimeoutError
from snapmirror.system.execution import CommandExecutor as ce
from .protocols import SnapshotOracle

logger = loguru.logger

SHORT_ID_LENGTH = 8
NO_REPOSITORY_MARKER = "Is there a repository at the following location?"
MISSING_SNAPSHOT_MARKERS = ("Ignoring", "no matching ID found")

# rsync --itemize-changes: 11-character change code, a space, then the name
ITEMIZE_CODE_WIDTH = 11
DELETING_MARKER = "*deleting"


def short_id(snapshot_id: SnapshotRef) -> str:
    return snapshot_id[:SHORT_ID_LENGTH]


def snapshot_time(snapshot: dict) -> datetime:
    """Parse the RFC3339 ``time`` of a restic snapshot entry as an aware datetime."""
    try:
        when = datetime.fromisoformat(snapshot["time"])
    except (KeyError, TypeError, ValueError) as e:
        raise BackendLogicError(
            f"Snapshot {snapshot.get('id')} has no usable time: {snapshot.get('time')!r}"
        ) from e
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return when


def parse_itemized_line(line: str) -> Optional[ChangeEntry]:
    """Classify one line of ``rsync -n --itemize-changes`` output."""
    if len(line) <= ITEMIZE_CODE_WIDTH + 1:
        return None

    code = line[:ITEMIZE_CODE_WIDTH]
    path = line[ITEMIZE_CODE_WIDTH + 1:]

    if code.startswith(DELETING_MARKER):
        return ChangeEntry(ChangeType.REMOVED, path)

    # Directory whose attributes did not change
    if code.startswith(".d"):
        return None

    if code[1] == "L" and " -> " in path:
        path = path.split(" -> ", 1)[0]

    if code.endswith("+++++++++"):
        return ChangeEntry(ChangeType.ADDED, path)
    return ChangeEntry(ChangeType.MODIFIED, path)


class ResticMount:
    """
    One snapshot of a restic repository mounted read-only via FUSE.

    Usage as context manager:
        with ResticMount(repo, snapshot_id, mount_point) as mount:
            rsync_from(mount.root)

    ``restic mount`` keeps running in the background; the mount is trusted
    only once the snapshot's ``ids/<short id>`` directory appears. Release
    (``fusermount -u`` then stopping the process) happens once, on every
    exit path.
    """

    POLL_INTERVAL = 0.5
    STOP_TIMEOUT = 10.0

    def __init__(self, repository: str, snapshot_id: SnapshotRef, mount_point: Path,
                 password_file: Optional[Path] = None, timeout: float = 30.0) -> None:
        self.repository = repository
        self.snapshot_id = snapshot_id
        self.mount_point = Path(mount_point)
        self.password_file = password_file
        self.timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._acquired = False

    @property
    def root(self) -> Path:
        return self.mount_point / "ids" / short_id(self.snapshot_id)

    @property
    def is_acquired(self) -> bool:
        return self._acquired

    def _mount_command(self) -> list[str]:
        cmd = ["restic", "-r", self.repository]
        if self.password_file:
            cmd.extend(["--password-file", str(self.password_file)])
        cmd.extend(["mount", str(self.mount_point)])
        return cmd

    def acquire(self) -> "ResticMount":
        if self._acquired:
            logger.warning(f"Restic mount at {self.mount_point} already acquired")
            return self

        logger.info(f"Mounting restic snapshot {short_id(self.snapshot_id)} at {self.mount_point}")
        self.mount_point.mkdir(parents=True, exist_ok=True)
        try:
            self._process = ce.spawn(self._mount_command())
        except BackendTransportError:
            self._remove_mount_point()
            raise

        deadline = time.monotonic() + self.timeout
        while not self.root.exists():
            if self._process.poll() is not None:
                stderr = self._read_stderr()
                self._stop_process()
                raise BackendLogicError(
                    f"restic mount exited with code {self._process.returncode}: {stderr}",
                    command=self._mount_command(), stderr=stderr,
                )
            if time.monotonic() >= deadline:
                self._stop_process()
                raise MountTimeoutError(
                    f"Restic mount at {self.mount_point} not ready after {self.timeout}s",
                    mount_point=str(self.mount_point), timeout=self.timeout,
                )
            time.sleep(self.POLL_INTERVAL)

        self._acquired = True
        logger.debug(f"Restic mounted successfully at {self.mount_point}")
        return self

    def release(self) -> None:
        """Unmount and stop the background process. Safe to call twice."""
        if not self._acquired:
            return
        self._acquired = False

        logger.info(f"Unmounting restic at {self.mount_point}")
        result = ce.run_local(["fusermount", "-u", str(self.mount_point)])
        if result.returncode != 0:
            logger.warning(f"fusermount -u {self.mount_point} failed: {result.stderr.strip()}")
        self._stop_process()

    def _read_stderr(self) -> str:
        if self._process is None or self._process.stderr is None:
            return ""
        try:
            return self._process.stderr.read().strip()
        except (OSError, ValueError):
            return ""

    def _stop_process(self) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning(f"restic mount did not exit, killing pid {process.pid}")
                process.kill()
                process.wait()
        if process is not None and process.stderr is not None:
            process.stderr.close()
        self._remove_mount_point()

    def _remove_mount_point(self) -> None:
        try:
            self.mount_point.rmdir()
        except OSError as e:
            logger.debug(f"Could not remove mount point {self.mount_point}: {e}")

    def __enter__(self) -> "ResticMount":
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class ResticOracle(SnapshotOracle):
    """Snapshot oracle for one restic repository."""

    def __init__(self, repository: str, password_file: Optional[Path] = None,
                 mount_base: Optional[Path] = None, mount_timeout: float = 30.0) -> None:
        self.repository = repository
        self.password_file = password_file
        self.mount_base = Path(mount_base) if mount_base else Path(tempfile.gettempdir())
        self.mount_timeout = mount_timeout
        # Mounts currently open in this process, so nested scopes share one
        self._active: dict[SnapshotRef, ResticMount] = {}

    def _restic(self, *args: str) -> list[str]:
        cmd = ["restic", "-r", self.repository]
        if self.password_file:
            cmd.extend(["--password-file", str(self.password_file)])
        cmd.extend(args)
        return cmd

    def list_head(self) -> Optional[SnapshotRef]:
        result = ce.run_local(self._restic("snapshots", "--json", "--latest", "1"))
        if result.returncode != 0:
            stderr = result.stderr.strip()
            # Empty or uninitialized repository
            if NO_REPOSITORY_MARKER in stderr:
                return None
            raise BackendLogicError(f"restic command failed: {stderr}", stderr=stderr)

        stdout = result.stdout.strip()
        if not stdout or stdout == "null":
            return None
        try:
            snapshots = orjson.loads(stdout)
        except orjson.JSONDecodeError as e:
            raise BackendLogicError(f"Unexpected restic snapshots output: {e}") from e
        if not snapshots:
            return None

        # --latest is applied per host/path group; take the newest overall
        newest = max(snapshots, key=snapshot_time)
        return newest.get("id")

    def exists(self, snapshot_id: SnapshotRef) -> bool:
        result = ce.run_local(self._restic("snapshots", snapshot_id, "--json"))
        if result.returncode != 0:
            return False

        stdout = result.stdout.strip()
        if not stdout or stdout == "[]":
            return False

        # restic warns on stderr but still exits 0 for unknown IDs
        if any(marker in result.stderr for marker in MISSING_SNAPSHOT_MARKERS):
            return False
        return True

    @contextmanager
    def mounted(self, snapshot_id: SnapshotRef) -> Iterator[Path]:
        """Yield the root of ``snapshot_id``, mounting it unless already mounted."""
        active = self._active.get(snapshot_id)
        if active is not None:
            yield active.root
            return

        mount_point = Path(tempfile.mkdtemp(
            prefix=f"snapmirror-restic-{short_id(snapshot_id)}-", dir=self.mount_base
        ))
        mount = ResticMount(self.repository, snapshot_id, mount_point,
                            password_file=self.password_file, timeout=self.mount_timeout)
        with mount:
            self._active[snapshot_id] = mount
            try:
                yield mount.root
            finally:
                self._active.pop(snapshot_id, None)

    def resolve_root(self, snapshot_id: SnapshotRef):
        return self.mounted(snapshot_id)

    def diff(self, old: SnapshotRef, new: SnapshotRef) -> ChangeSet:
        with self.mounted(old) as old_root, self.mounted(new) as new_root:
            logger.debug(f"Computing differences between {short_id(old)} and {short_id(new)} using rsync")
            source, dest = f"{new_root}/", f"{old_root}/"

            entries = [entry for entry in self._itemize(source, dest)
                       if entry.change_type is not ChangeType.REMOVED]
            # Same direction with --delete: what exists only in old
            entries.extend(entry for entry in self._itemize(source, dest, "--delete")
                           if entry.change_type is ChangeType.REMOVED)

        return ChangeSet(entries=tuple(entries), root="")

    def _itemize(self, source: str, dest: str, *extra: str) -> list[ChangeEntry]:
        cmd = ["rsync", "-aAXHn", "--itemize-changes", *extra, source, dest]
        result = ce.run_local(cmd)
        # Any partial result (23/24 included) leaves the change list incomplete
        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise BackendLogicError(
                f"rsync dry run failed with code {result.returncode}: {stderr}",
                command=cmd, stderr=stderr,
            )

        entries = []
        for line in result.stdout.splitlines():
            entry = parse_itemized_line(line)
            if entry is not None:
                entries.append(entry)
        return entries

    def __repr__(self) -> str:
        return f"ResticOracle({self.repository!r})"

