# Author: PB
# Maintainer: PB
# Original date: 2025.06.02
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/conftest.py

"""
Shared test fixtures for the snapmirror test suite.

The fakes here stand in for the zfs/restic backends and for rsync so the
reconciler can be exercised without touching real snapshots.
"""

import itertools
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest
from loguru import logger

from snapmirror.config.sources import DatasetSource, ResticSource
from snapmirror.core.models import BackupRecord, ChangeSet, DeleteReport
from snapmirror.core.reconciler import Reconciler
from snapmirror.storage.history import HistoryStore
from snapmirror.storage.protocols import SnapshotOracle


class FakeOracle(SnapshotOracle):
    """In-memory snapshot oracle that records every call."""

    def __init__(self, head=None, existing=(), exists_errors=None,
                 changes=None, ready=True, root=Path("/snapshots")):
        self.head = head
        self.existing = set(existing)
        self.exists_errors = exists_errors or {}
        self.changes = changes if changes is not None else ChangeSet(entries=())
        self.ready = ready
        self.root = Path(root)
        self.calls = []

    def is_ready(self):
        self.calls.append(("is_ready",))
        return self.ready

    def list_head(self):
        self.calls.append(("list_head",))
        return self.head

    def exists(self, snapshot_id):
        self.calls.append(("exists", snapshot_id))
        if snapshot_id in self.exists_errors:
            raise self.exists_errors[snapshot_id]
        return snapshot_id in self.existing

    @contextmanager
    def resolve_root(self, snapshot_id):
        self.calls.append(("resolve", snapshot_id))
        try:
            yield self.root / snapshot_id
        finally:
            self.calls.append(("release", snapshot_id))

    def diff(self, old, new):
        self.calls.append(("diff", old, new))
        return self.changes

    @property
    def exists_calls(self):
        return [call[1] for call in self.calls if call[0] == "exists"]


class FakeTransfer:
    """Transfer double: logs calls in order, optionally failing some deletions."""

    def __init__(self, failing_deletes=(), mirror_error=None):
        self.failing_deletes = set(failing_deletes)
        self.mirror_error = mirror_error
        self.log = []

    def mirror_root(self, source_root, target_dir):
        self.log.append(("mirror_root", Path(source_root), Path(target_dir)))
        if self.mirror_error:
            raise self.mirror_error

    def mirror_file_list(self, source_root, target_dir, relative_paths, recursive=False):
        entry = "mirror_trees" if recursive else "mirror_files"
        self.log.append((entry, Path(source_root), Path(target_dir), tuple(relative_paths)))
        if self.mirror_error:
            raise self.mirror_error

    def delete_paths(self, target_dir, relative_paths):
        self.log.append(("delete", Path(target_dir), tuple(relative_paths)))
        failures = tuple(p for p in relative_paths if p in self.failing_deletes)
        return DeleteReport(
            deleted=len(relative_paths) - len(failures),
            errors=len(failures),
            failures=failures,
        )


def make_clock(start=datetime(2024, 1, 1, 12, 0, tzinfo=UTC)):
    """Clock returning strictly increasing instants, one second apart."""
    counter = itertools.count()
    return lambda: start + timedelta(seconds=next(counter))


@pytest.fixture(autouse=True)
def reset_loguru():
    """Restore the default stderr sink after tests that reconfigure loguru."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def history():
    store = HistoryStore.in_memory()
    yield store
    store.close()


@pytest.fixture
def target_dir(tmp_path):
    target = tmp_path / "target"
    target.mkdir()
    return target


@pytest.fixture
def dataset_source(target_dir):
    return DatasetSource(name="pool/ds", target_dir=target_dir)


@pytest.fixture
def restic_source(target_dir):
    return ResticSource(repository="/srv/restic/repo", target_dir=target_dir)


@pytest.fixture
def record_for(history):
    """Append a history record for a source, returning it."""
    clock = make_clock(datetime(2023, 12, 1, tzinfo=UTC))

    def _record(source, snapshot_id):
        record = BackupRecord(
            source_kind=source.kind,
            source_name=source.source_name,
            snapshot_id=snapshot_id,
            target_dir=Path(source.target_dir),
            recorded_at=clock(),
        )
        history.append(record)
        return record

    return _record


@pytest.fixture
def make_reconciler(history):
    """Build a Reconciler wired to a given oracle and transfer; events are collected."""

    def _make(oracle, transfer=None, dry_run=False):
        transfer = transfer if transfer is not None else FakeTransfer()
        events = []
        reconciler = Reconciler(
            history,
            transfer,
            oracle_factory=lambda source: oracle,
            on_event=events.append,
            dry_run=dry_run,
            clock=make_clock(),
        )
        reconciler.events = events
        return reconciler

    return _make


@pytest.fixture
def snapmirror_config_text():
    """Standard config YAML text template."""
    return """
database: {database}
mount_timeout: 5
datasets:
  - name: pool/home
    target_dir: {target}
  - name: pool/photos
    target_dir: {target}
    use_sudo: true
restic:
  - repository: /srv/restic/laptop
    target_dir: {target}
    password_file: /etc/snapmirror/restic.pass
"""


@pytest.fixture
def config_file(tmp_path, target_dir, snapmirror_config_text):
    path = tmp_path / "snapmirror.yml"
    path.write_text(snapmirror_config_text.format(
        database=tmp_path / "db" / "backup.db",
        target=target_dir,
    ))
    return path

