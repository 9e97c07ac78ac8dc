# Author: PB
# Maintainer: PB
# Original date: 2025.01.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/factory.py

"""Snapshot oracle factory."""

from pathlib import Path
from typing import Optional

from loguru import logger

from snapmirror.config.sources import DatasetSource, ResticSource, SourceConfig
from .protocols import SnapshotOracle
from .restic import ResticOracle
from .snapshots import ZFSOracle


def create_oracle(source: SourceConfig, mount_base: Optional[Path] = None,
                  mount_timeout: float = 30.0) -> SnapshotOracle:
    """Create the snapshot oracle for one configured source.

    Selected once per source; the reconciler never re-dispatches.

    Args:
        source: Dataset or restic source configuration
        mount_base: Parent directory for restic mountpoints
        mount_timeout: Seconds to wait for a restic mount to become ready

    Raises:
        ValueError: If the source type is not supported
    """
    if isinstance(source, DatasetSource):
        logger.debug(f"Using ZFS oracle for {source.name}")
        return ZFSOracle(source.name, use_sudo=source.use_sudo)

    if isinstance(source, ResticSource):
        logger.debug(f"Using restic oracle for {source.repository}")
        return ResticOracle(
            source.repository,
            password_file=source.password_file,
            mount_base=mount_base,
            mount_timeout=mount_timeout,
        )

    raise ValueError(f"Source type '{type(source).__name__}' not supported")
