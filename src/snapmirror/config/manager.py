# Author: PB
# Maintainer: PB
# Original date: 2025.05.13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/config/manager.py

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Final, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from snapmirror.system.exceptions import ConfigError, SnapMirrorError
from .sources import DatasetSource, ResticSource, SourceConfig


# ---- Constants ----

CONFIG_FILE: Final = "snapmirror.yml"
DEFAULT_DATABASE: Final = Path("/var/lib/snapmirror/backup.db")
DEFAULT_MOUNT_TIMEOUT: Final = 30.0


def _get_config_search_paths() -> tuple[Path, ...]:
    """Get config file search paths (ordered by priority: lowest to highest).

    Dynamic function to ensure environment variables are evaluated at runtime,
    not at module import time (important for test isolation).
    """
    return (
        Path("/etc/snapmirror") / CONFIG_FILE,  # System defaults
        Path.home() / ".config" / "snapmirror" / CONFIG_FILE,  # User config
        Path(os.getenv("XDG_CONFIG_HOME", "")) / "snapmirror" / CONFIG_FILE,  # XDG override
        Path(os.getenv("SNAPMIRROR_CONFIG_HOME", "")) / CONFIG_FILE,  # Explicit override (highest priority)
    )


def _load_merged_config_data(candidates: tuple[Path, ...]) -> dict:
    """Load and merge config data from candidate paths.

    Later files override top-level keys of earlier ones.

    Raises:
        FileNotFoundError: If no config files found
        ConfigError: If a config file exists but cannot be parsed
    """
    merged_data = {}
    found_configs = []

    for candidate in candidates:
        # Relative candidates come from unset env vars
        if not candidate.is_absolute() or not candidate.exists():
            continue
        merged_data.update(_read_yaml(candidate))
        found_configs.append(str(candidate))
        logger.debug(f"Loaded config from {candidate}")

    if not found_configs:
        logger.error("No config found in /etc/snapmirror/, ~/.config/snapmirror/, XDG_CONFIG_HOME, or SNAPMIRROR_CONFIG_HOME")
        raise FileNotFoundError(f"No {CONFIG_FILE} found in any standard location")

    logger.debug(f"Merged config from: {', '.join(found_configs)}")
    return merged_data


def _read_yaml(path: Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file '{path}': {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping")
    return data


# ---- Main Config ----

class BackupConfig(BaseModel):
    """Backup run configuration: where the history lives and what to mirror."""
    model_config = ConfigDict(extra='forbid')

    database: Path = Field(default=DEFAULT_DATABASE, description="SQLite backup history")
    local_log: Optional[Path] = Field(default=None, description="Directory for the debug log file")
    mount_base: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()),
                             description="Where restic mountpoints are created")
    mount_timeout: float = Field(default=DEFAULT_MOUNT_TIMEOUT, gt=0,
                                 description="Seconds to wait for a restic mount to become ready")

    datasets: list[DatasetSource] = Field(default_factory=list)
    restic: list[ResticSource] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_has_sources(self) -> "BackupConfig":
        if not self.datasets and not self.restic:
            raise ValueError("No datasets or restic repositories defined in config file")
        return self

    @property
    def sources(self) -> list[SourceConfig]:
        """All sources, datasets first."""
        return [*self.datasets, *self.restic]

    def required_tools(self) -> list[tuple[str, str]]:
        """(tool, version argument) pairs needed to back up the configured sources."""
        tools = [("rsync", "--version")]
        if self.datasets:
            tools.append(("zfs", "version"))
        if self.restic:
            tools.append(("restic", "version"))
            tools.append(("fusermount", "-V"))
        return tools

    @classmethod
    def from_data(cls, data: dict) -> "BackupConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def load(cls, config_path: Path | None = None) -> "BackupConfig":
        """Load the explicit config file, or merge the standard locations."""
        if config_path is not None:
            if not config_path.exists():
                raise ConfigError(f"Config file '{config_path}' does not exist")
            data = _read_yaml(config_path)
        else:
            try:
                data = _load_merged_config_data(_get_config_search_paths())
            except FileNotFoundError as e:
                raise ConfigError(str(e)) from e
        return cls.from_data(data)


# ---- Validation Function ----

def validate_config(config_path: Path | None = None, check_tools: bool = True) -> list[str]:
    """Return a list of validation errors. Empty list means config is valid."""
    from snapmirror.system.execution import check_tool_installed

    errors = []

    try:
        cfg = BackupConfig.load(config_path)
    except ConfigError as e:
        errors.append(f"Error loading config: {e}")
        return errors

    for source in cfg.sources:
        if not source.target_dir.is_absolute():
            errors.append(f"target_dir must be absolute for {source.source_name}: {source.target_dir}")

    if cfg.local_log and not cfg.local_log.is_absolute():
        errors.append(f"local_log path must be absolute: {cfg.local_log}")

    if check_tools:
        for tool, version_arg in cfg.required_tools():
            try:
                check_tool_installed(tool, version_arg)
            except SnapMirrorError as e:
                errors.append(str(e))

    return errors


# done.
