# Author: PB
# Maintainer: PB
# Original date: 2025-06-17
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/config/sources.py

"""
Source configuration models for snapmirror.

A source names WHERE versioned data lives and WHERE its mirror goes. Each
source type has its own specific configuration requirements:
- Dataset: ZFS dataset name + target directory
- Restic: repository location + target directory (+ optional password file)
"""

from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from snapmirror.core.models import SourceKind


class DatasetSource(BaseModel):
    """
    ZFS dataset source.

    Snapshots are read through the dataset's hidden ``.zfs/snapshot``
    directory, so the dataset must be mounted when a backup runs.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    type: Literal["dataset"] = "dataset"
    name: str = Field(..., description="ZFS dataset, e.g. 'tank/home'")
    target_dir: Path = Field(..., description="Directory the dataset is mirrored into")
    use_sudo: bool = Field(default=False, description="Run zfs commands through sudo -n")

    @property
    def kind(self) -> SourceKind:
        return SourceKind.DATASET

    @property
    def source_name(self) -> str:
        return self.name

    def __str__(self) -> str:
        return f"dataset {self.name} -> {self.target_dir}"


class ResticSource(BaseModel):
    """
    Restic repository source.

    The newest snapshot is exposed through ``restic mount`` for the transfer.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    type: Literal["restic"] = "restic"
    repository: str = Field(..., description="Repository location passed to restic -r")
    target_dir: Path = Field(..., description="Directory the latest snapshot is mirrored into")
    password_file: Optional[Path] = Field(default=None, description="Passed to restic --password-file")

    @property
    def kind(self) -> SourceKind:
        return SourceKind.RESTIC

    @property
    def source_name(self) -> str:
        return self.repository

    def __str__(self) -> str:
        return f"restic repository {self.repository} -> {self.target_dir}"


# Union type for all source configurations
SourceConfig = Union[DatasetSource, ResticSource]
