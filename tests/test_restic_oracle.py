# Author: PB
# Maintainer: PB
# Original date: 2025.06.14
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# tests/test_restic_oracle.py

from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock, patch

import orjson
import pytest

from snapmirror.core.models import ChangeType
from snapmirror.storage.restic import (
    ResticMount,
    ResticOracle,
    parse_itemized_line,
    short_id,
)
from snapmirror.system.exceptions import (
    BackendLogicError,
    BackendTransportError,
    MountTimeoutError,
    TransferError,
)

RUN_LOCAL = 'snapmirror.system.execution.CommandExecutor.run_local'
SPAWN = 'snapmirror.system.execution.CommandExecutor.spawn'

SNAP_OLD = "1a2b3c4d5e6f7a8b9c0d1a2b3c4d5e6f7a8b9c0d1a2b3c4d5e6f7a8b9c0d1a2b"
SNAP_NEW = "9f8e7d6c5b4a39281706f5e4d3c2b1a09f8e7d6c5b4a39281706f5e4d3c2b1a0"


def _result(stdout="", returncode=0, stderr=""):
    result = MagicMock()
    result.stdout = stdout
    result.stderr = stderr
    result.returncode = returncode
    return result


def _running_process():
    process = MagicMock()
    process.poll.return_value = None
    process.pid = 4242
    return process


class TestResticQueries:

    @pytest.fixture
    def oracle(self, tmp_path):
        return ResticOracle("/srv/restic/repo", password_file=Path("/etc/restic.pass"),
                            mount_base=tmp_path)

    def test_list_head_picks_newest_across_groups(self, oracle):
        snapshots = [
            {"id": SNAP_OLD, "time": "2024-01-01T10:00:00Z", "hostname": "a"},
            {"id": SNAP_NEW, "time": "2024-02-01T10:00:00Z", "hostname": "b"},
        ]
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(orjson.dumps(snapshots).decode())

            assert oracle.list_head() == SNAP_NEW
            mock_run.assert_called_once_with([
                "restic", "-r", "/srv/restic/repo", "--password-file", "/etc/restic.pass",
                "snapshots", "--json", "--latest", "1",
            ])

    def test_list_head_compares_times_not_strings(self, oracle):
        # 09:30Z is later than 10:00+01:00 (09:00Z) though it sorts lower as text
        snapshots = [
            {"id": SNAP_OLD, "time": "2024-02-01T10:00:00.5+01:00"},
            {"id": SNAP_NEW, "time": "2024-02-01T09:30:00.123456789Z"},
        ]
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(orjson.dumps(snapshots).decode())

            assert oracle.list_head() == SNAP_NEW

    def test_list_head_without_time_raises(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(orjson.dumps([{"id": SNAP_OLD}]).decode())

            with pytest.raises(BackendLogicError, match="no usable time"):
                oracle.list_head()

    @pytest.mark.parametrize("stdout", ["", "null", "[]"])
    def test_list_head_empty_repository(self, oracle, stdout):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(stdout)

            assert oracle.list_head() is None

    def test_list_head_uninitialized_repository(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(
                returncode=1,
                stderr="Fatal: unable to open config file\nIs there a repository at the following location?\n",
            )

            assert oracle.list_head() is None

    def test_list_head_other_failure_raises(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(returncode=1, stderr="Fatal: wrong password")

            with pytest.raises(BackendLogicError, match="wrong password"):
                oracle.list_head()

    def test_list_head_bad_json_raises(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result("{not json")

            with pytest.raises(BackendLogicError):
                oracle.list_head()

    def test_exists(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(orjson.dumps([{"id": SNAP_OLD}]).decode())

            assert oracle.exists(SNAP_OLD) is True
            assert mock_run.call_args[0][0][-3:] == ["snapshots", SNAP_OLD, "--json"]

    @pytest.mark.parametrize("result", [
        _result(returncode=1, stderr="Fatal: no matching ID found"),
        _result("[]"),
        _result(""),
        _result('[{"id": "x"}]', stderr="Ignoring \"deadbeef\": no matching ID found"),
    ])
    def test_exists_negative_answers(self, oracle, result):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = result

            assert oracle.exists(SNAP_OLD) is False

    def test_exists_transport_failure_propagates(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.side_effect = BackendTransportError("Failed to execute restic")

            with pytest.raises(BackendTransportError):
                oracle.exists(SNAP_OLD)


class TestItemizedParsing:

    def test_new_file(self):
        entry = parse_itemized_line(">f+++++++++ docs/new.txt")
        assert entry.change_type is ChangeType.ADDED
        assert entry.path == "docs/new.txt"

    def test_changed_file(self):
        entry = parse_itemized_line(">f.st...... docs/changed.txt")
        assert entry.change_type is ChangeType.MODIFIED
        assert entry.path == "docs/changed.txt"

    def test_deleted_file(self):
        entry = parse_itemized_line("*deleting   docs/old.txt")
        assert entry.change_type is ChangeType.REMOVED
        assert entry.path == "docs/old.txt"

    def test_symlink_target_is_dropped(self):
        entry = parse_itemized_line("cL+++++++++ current -> releases/v2")
        assert entry.change_type is ChangeType.ADDED
        assert entry.path == "current"

    def test_unchanged_directory_and_noise_are_ignored(self):
        assert parse_itemized_line(".d..t...... docs/") is None
        assert parse_itemized_line("") is None
        assert parse_itemized_line("short") is None

    def test_short_id(self):
        assert short_id(SNAP_OLD) == "1a2b3c4d"


class TestResticMount:

    def _mount(self, tmp_path, timeout=5.0):
        return ResticMount("/srv/restic/repo", SNAP_NEW, tmp_path / "mnt", timeout=timeout)

    def test_acquire_waits_for_snapshot_directory(self, tmp_path):
        mount = self._mount(tmp_path)
        process = _running_process()

        def spawn(cmd):
            assert cmd == ["restic", "-r", "/srv/restic/repo", "mount", str(tmp_path / "mnt")]
            mount.root.mkdir(parents=True)
            return process

        with patch(SPAWN, side_effect=spawn), patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result()
            with mount as acquired:
                assert acquired.is_acquired
                assert acquired.root == tmp_path / "mnt" / "ids" / short_id(SNAP_NEW)

            mock_run.assert_called_once_with(["fusermount", "-u", str(tmp_path / "mnt")])
        process.stderr.close.assert_called_once()
        process.terminate.assert_called_once()
        assert not mount.is_acquired

    def test_timeout_stops_process_and_cleans_up(self, tmp_path):
        mount = self._mount(tmp_path, timeout=2.0)
        process = _running_process()
        now = [100.0]

        def sleep(seconds):
            now[0] += seconds

        with patch(SPAWN, return_value=process), \
                patch('snapmirror.storage.restic.time.monotonic', side_effect=lambda: now[0]), \
                patch('snapmirror.storage.restic.time.sleep', side_effect=sleep) as mock_sleep:
            with pytest.raises(MountTimeoutError) as exc_info:
                mount.acquire()

        assert exc_info.value.timeout == 2.0
        assert mock_sleep.call_count == 4
        process.terminate.assert_called_once()
        assert not (tmp_path / "mnt").exists()
        assert not mount.is_acquired

    def test_process_exit_during_mount_raises(self, tmp_path):
        mount = self._mount(tmp_path)
        process = MagicMock()
        process.poll.return_value = 1
        process.returncode = 1
        process.stderr.read.return_value = "Fatal: wrong password or no key found\n"

        with patch(SPAWN, return_value=process):
            with pytest.raises(BackendLogicError, match="wrong password"):
                mount.acquire()

        process.terminate.assert_not_called()
        assert not (tmp_path / "mnt").exists()

    def test_spawn_failure_removes_mount_point(self, tmp_path):
        mount = self._mount(tmp_path)

        with patch(SPAWN, side_effect=BackendTransportError("Failed to start restic")):
            with pytest.raises(BackendTransportError):
                mount.acquire()

        assert not (tmp_path / "mnt").exists()

    def test_release_is_idempotent(self, tmp_path):
        mount = self._mount(tmp_path)
        process = _running_process()

        def spawn(cmd):
            mount.root.mkdir(parents=True)
            return process

        with patch(SPAWN, side_effect=spawn), patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(returncode=1, stderr="not mounted")
            mount.acquire()
            mount.release()
            mount.release()

            assert mock_run.call_count == 1


class TestResticOracleMounts:

    @pytest.fixture
    def oracle(self, tmp_path):
        return ResticOracle("/srv/restic/repo", mount_base=tmp_path, mount_timeout=5.0)

    def test_unmounted_once_when_transfer_fails(self, oracle, tmp_path):
        processes = []

        def spawn(cmd):
            mount_point = Path(cmd[-1])
            (mount_point / "ids" / short_id(SNAP_NEW)).mkdir(parents=True)
            processes.append(_running_process())
            return processes[-1]

        with patch(SPAWN, side_effect=spawn), patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result()
            with pytest.raises(TransferError):
                with oracle.resolve_root(SNAP_NEW) as root:
                    assert root.parent.name == "ids"
                    assert root.name == short_id(SNAP_NEW)
                    assert root.is_relative_to(tmp_path)
                    raise TransferError("rsync failed", returncode=23)

            fusermount_calls = [c for c in mock_run.call_args_list if c[0][0][0] == "fusermount"]
            assert len(fusermount_calls) == 1
        assert len(processes) == 1
        processes[0].terminate.assert_called_once()

    def test_nested_scopes_share_one_mount(self, oracle):
        def spawn(cmd):
            (Path(cmd[-1]) / "ids" / short_id(SNAP_NEW)).mkdir(parents=True)
            return _running_process()

        with patch(SPAWN, side_effect=spawn) as mock_spawn, patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result()
            with oracle.resolve_root(SNAP_NEW) as outer:
                with oracle.mounted(SNAP_NEW) as inner:
                    assert inner == outer

            assert mock_spawn.call_count == 1
            assert mock_run.call_count == 1


class TestResticDiff:

    @pytest.fixture
    def oracle(self):
        oracle = ResticOracle("/srv/restic/repo")

        @contextmanager
        def fake_mounted(snapshot_id):
            yield Path("/mnt") / short_id(snapshot_id)

        oracle.mounted = fake_mounted
        return oracle

    def test_diff_combines_forward_and_delete_passes(self, oracle):
        forward = ">f+++++++++ new.txt\n>f.st...... changed.txt\n.d..t...... ./\n"
        with_delete = "*deleting   old.txt\n>f+++++++++ new.txt\n>f.st...... changed.txt\n"

        with patch(RUN_LOCAL) as mock_run:
            mock_run.side_effect = [_result(forward), _result(with_delete)]

            changes = oracle.diff(SNAP_OLD, SNAP_NEW)

        assert changes.root == ""
        assert [(e.change_type, e.path) for e in changes.entries] == [
            (ChangeType.ADDED, "new.txt"),
            (ChangeType.MODIFIED, "changed.txt"),
            (ChangeType.REMOVED, "old.txt"),
        ]
        first, second = (c[0][0] for c in mock_run.call_args_list)
        new_root, old_root = f"/mnt/{short_id(SNAP_NEW)}/", f"/mnt/{short_id(SNAP_OLD)}/"
        assert first == ["rsync", "-aAXHn", "--itemize-changes", new_root, old_root]
        assert second == ["rsync", "-aAXHn", "--itemize-changes", "--delete", new_root, old_root]

    @pytest.mark.parametrize("returncode", [23, 24])
    def test_diff_partial_dry_run_raises(self, oracle, returncode):
        forward = ">f+++++++++ ok.txt\n"
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(
                forward, returncode=returncode,
                stderr='rsync: [sender] send_files failed to open "secret.txt": Permission denied (13)',
            )

            with pytest.raises(BackendLogicError, match=f"code {returncode}") as exc_info:
                oracle.diff(SNAP_OLD, SNAP_NEW)

        assert "Permission denied" in exc_info.value.stderr
        assert mock_run.call_count == 1

    def test_diff_rsync_failure_raises(self, oracle):
        with patch(RUN_LOCAL) as mock_run:
            mock_run.return_value = _result(returncode=12, stderr="rsync error: protocol data stream")

            with pytest.raises(BackendLogicError, match="rsync dry run failed"):
                oracle.diff(SNAP_OLD, SNAP_NEW)
