# Author: PB
# Maintainer: PB
# Original date: 2025.06.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/transfer.py

"""rsync-based transfer into the target directory, plus local deletions."""

import contextlib
import shutil
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterator

import loguru

from snapmirror.core.models import DeleteReport
from snapmirror.system.exceptions import BackendError, TransferError
from snapmirror.system.execution import CommandExecutor as ce

logger = loguru.logger

# Archive mode with ACLs, extended attrs, hard links
RSYNC_ARCHIVE_FLAGS = "-aAXH"


@contextlib.contextmanager
def create_temp_file_list(file_list: list[str]) -> Iterator[str]:
    """
    Context manager for creating temporary file lists for rsync --files-from.

    Paths are written one per line without a leading slash, so rsync
    resolves them against the source root. The file is removed on exit,
    even if rsync fails.
    """
    with tempfile.NamedTemporaryFile(mode='w', delete=True, suffix='.filelist',
                                     encoding="utf-8", errors="surrogateescape") as temp_file:
        for path in file_list:
            temp_file.write(f"{path.lstrip('/')}\n")

        # Ensure data is written to disk before rsync reads it
        temp_file.flush()

        yield temp_file.name


def _is_inside(relative_path: str) -> bool:
    """True if ``relative_path`` cannot escape the directory it is joined to."""
    pure = PurePosixPath(relative_path)
    return bool(relative_path) and not pure.is_absolute() and ".." not in pure.parts


class RsyncTransfer:
    """Mirror snapshot roots into a target directory with rsync."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    def _run_rsync(self, cmd: list[str]) -> None:
        try:
            result = ce.run_local(cmd)
        except BackendError as e:
            raise TransferError(f"Failed to execute rsync: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise TransferError(f"rsync failed: {stderr}", returncode=result.returncode)

        if self.verbose:
            logger.info(result.stdout)
        else:
            logger.debug(result.stdout)

    def mirror_root(self, source_root: Path, target_dir: Path) -> None:
        """Make ``target_dir`` an exact copy of ``source_root`` (deletes extraneous files)."""
        logger.info(f"Starting rsync backup: {source_root} -> {target_dir}")
        self._run_rsync([
            "rsync", f"{RSYNC_ARCHIVE_FLAGS}v",
            "--delete",  # Delete files in target that don't exist in source
            "--stats",
            f"{source_root}/",  # trailing slash: copy contents, not the directory
            str(target_dir),
        ])
        logger.info("Rsync completed successfully")

    def mirror_file_list(self, source_root: Path, target_dir: Path,
                         relative_paths: list[str], recursive: bool = False) -> None:
        """Copy only ``relative_paths`` from ``source_root``, keeping their structure.

        With --files-from, -a does not imply -r: a listed directory is
        created empty unless ``recursive`` is set.
        """
        if not relative_paths:
            logger.debug("No files to sync")
            return

        kind = "tree(s)" if recursive else "file(s)"
        logger.info(f"Syncing {len(relative_paths)} {kind} with rsync")
        with create_temp_file_list(relative_paths) as filelist_path:
            cmd = [
                "rsync", f"{RSYNC_ARCHIVE_FLAGS}v",
                "--relative",  # Preserve directory structure
            ]
            if recursive:
                cmd.append("--recursive")
            cmd.extend([
                f"--files-from={filelist_path}",
                f"{source_root}/",
                str(target_dir),
            ])
            self._run_rsync(cmd)
        logger.info("Rsync completed successfully")

    def delete_paths(self, target_dir: Path, relative_paths: list[str]) -> DeleteReport:
        """Best-effort removal of files and directories below ``target_dir``.

        Every path is attempted. A path that is already gone counts as
        deleted; a path that would escape ``target_dir`` counts as an error
        and is left alone.
        """
        if not relative_paths:
            return DeleteReport()

        logger.info(f"Deleting {len(relative_paths)} item(s) from target")
        deleted = 0
        failures = []

        for rel_path in relative_paths:
            if not _is_inside(rel_path):
                logger.error(f"Refusing to delete path outside target: {rel_path}")
                failures.append(rel_path)
                continue

            target_path = Path(target_dir) / rel_path
            try:
                if target_path.is_dir() and not target_path.is_symlink():
                    logger.debug(f"Deleting directory: {rel_path}")
                    shutil.rmtree(target_path)
                elif target_path.exists() or target_path.is_symlink():
                    logger.debug(f"Deleting file: {rel_path}")
                    target_path.unlink()
                else:
                    logger.debug(f"Already gone: {rel_path}")
                deleted += 1
            except OSError as e:
                logger.error(f"Failed to delete {rel_path}: {e}")
                failures.append(rel_path)

        logger.info(f"Deletion complete: {deleted} deleted, {len(failures)} errors")
        return DeleteReport(deleted=deleted, errors=len(failures), failures=tuple(failures))
